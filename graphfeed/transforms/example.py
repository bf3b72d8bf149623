from __future__ import annotations

from typing import Any, Sequence

from graphfeed.domain.models import DestinationEntry, SourceRecord
from graphfeed.domain.stream_name import StreamName
from graphfeed.domain.transform import BaseTransformUnit, ContextView

EXAMPLE_ORIGIN = "example"
ORGS_STREAM = StreamName(origin=EXAMPLE_ORIGIN, name="orgs")
REPOS_STREAM = StreamName(origin=EXAMPLE_ORIGIN, name="repos")


class OrgsTransform(BaseTransformUnit):
    """example__orgs -> vcs_Organization."""

    stream = ORGS_STREAM

    def destination_types(self) -> Sequence[str]:
        return ("vcs_Organization",)

    def convert(self, record: SourceRecord, context: ContextView) -> Sequence[DestinationEntry]:
        data = record.data
        login = data.get("login")
        if not login:
            return []
        return [
            DestinationEntry(
                "vcs_Organization",
                {
                    "uid": str(login).lower(),
                    "name": data.get("name"),
                    "htmlUrl": data.get("html_url"),
                },
            )
        ]


class ReposTransform(BaseTransformUnit):
    """
    Назначение:
        example__repos -> vcs_Repository со ссылкой на организацию.

    Взаимодействия:
        Организацию ищет в контексте по org_id; если её нет, сущность
        отдаётся без ссылки на организацию.
    """

    stream = REPOS_STREAM

    def destination_types(self) -> Sequence[str]:
        return ("vcs_Repository",)

    def dependencies(self) -> Sequence[StreamName]:
        return (ORGS_STREAM,)

    def convert(self, record: SourceRecord, context: ContextView) -> Sequence[DestinationEntry]:
        data = record.data
        name = data.get("name")
        if not name:
            raise ValueError("repository record has no name")
        payload: dict[str, Any] = {
            "name": str(name).lower(),
            "fullName": data.get("full_name"),
            "private": bool(data.get("private", False)),
        }
        org = context.get(ORGS_STREAM, data.get("org_id"))
        if org is not None and org.data.get("login"):
            payload["organization"] = {"uid": str(org.data["login"]).lower()}
        return [DestinationEntry("vcs_Repository", payload)]
