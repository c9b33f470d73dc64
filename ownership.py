"""
Ownership scope of a record: personal (one user, no group) or shared (a group).

Every row that can be shared carries ``user_id`` (creator) and a nullable
``group_id``. Queries never test those columns ad hoc; they go through
``owned_by`` so a personal query can never pick up group rows and vice versa.
"""

from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import and_


@dataclass(frozen=True)
class Personal:
    user_id: int

    def __str__(self) -> str:
        return f"user:{self.user_id}"


@dataclass(frozen=True)
class Shared:
    group_id: int

    def __str__(self) -> str:
        return f"group:{self.group_id}"


Owner = Union[Personal, Shared]


def owner_for(user_id: int, group_id: Optional[int] = None) -> Owner:
    if group_id is not None:
        return Shared(group_id)
    return Personal(user_id)


def owner_of(row) -> Owner:
    return owner_for(row.user_id, row.group_id)


def owned_by(model, owner: Owner):
    if isinstance(owner, Shared):
        return model.group_id == owner.group_id
    return and_(model.user_id == owner.user_id, model.group_id.is_(None))


def owner_columns(owner: Owner, acting_user_id: int) -> dict[str, Optional[int]]:
    """Column values for a new row created by ``acting_user_id`` in ``owner``."""
    if isinstance(owner, Shared):
        return {"user_id": acting_user_id, "group_id": owner.group_id}
    return {"user_id": owner.user_id, "group_id": None}
