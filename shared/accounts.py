"""Lookup of learning-platform accounts linked to Discord members."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from shared import db

__all__ = ["Account", "find_linked_account"]

log = logging.getLogger("pumpkin.accounts")

# discord_id is stored as text; subscriptions are joined only when active.
_LINKED_ACCOUNT_SQL = """
SELECT u.id, u.email, s.active
FROM users u
LEFT JOIN subscriptions s ON u.id = s.uid AND s.active = true
WHERE u.discord_id = $1
"""


@dataclass(frozen=True)
class Account:
    id: int | str
    email: str
    active: bool = False


async def find_linked_account(member_id: int) -> Optional[Account]:
    """Return the account linked to ``member_id`` or ``None``.

    A missing pool behaves like "not linked yet" so the link step keeps
    waiting rather than failing the onboardee.
    """

    pool = db.get_pool()
    if pool is None:
        log.debug("identity store unavailable; treating member %s as unlinked", member_id)
        return None

    async with pool.acquire() as conn:
        row = await conn.fetchrow(_LINKED_ACCOUNT_SQL, str(member_id))
    if row is None:
        return None
    return Account(id=row["id"], email=str(row["email"] or ""), active=bool(row["active"]))
