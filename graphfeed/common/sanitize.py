def maskSecret(value: str | None) -> str | None:
    """
    Назначение:
        Маскирует секреты (api_key) для безопасного вывода в stdout/logs/отчёты.
    """
    if value is None:
        return None
    return "***"

