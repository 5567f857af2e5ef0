from typing import Iterable

from pydantic import field_validator

from .model import OrderedById


class User(OrderedById):
    id: str
    name: str
    email: str


class UserGroupMember(OrderedById):
    id: str


class UserGroup(OrderedById):
    id: str
    name: str
    users: frozenset[UserGroupMember] = frozenset()

    @field_validator("users", mode="before")
    @classmethod
    def coerce_member_ids(cls, v: Iterable) -> frozenset:  # noqa: ANN102
        # Stored documents carry members as [{"id": ...}], raw upstream data as plain ids
        members = set()
        for m in v:
            if isinstance(m, str):
                members.add(UserGroupMember(id=m))
            elif isinstance(m, dict):
                members.add(UserGroupMember.model_validate(m))
            else:
                members.add(m)
        return frozenset(members)

    @property
    def member_ids(self) -> list[str]:
        return [member.id for member in sorted(self.users)]
