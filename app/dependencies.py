"""
Sieger Billing - FastAPI Dependencies

Shared dependencies for the acting user.
"""

from typing import Optional

from fastapi import Header


async def get_actor(
    x_actor_id: Optional[str] = Header(None, max_length=255),
) -> Optional[str]:
    """
    Identity recorded as created_by / locked_by.

    Authentication happens upstream; the gateway forwards the user id in the
    X-Actor-Id header.
    """
    if x_actor_id is None:
        return None
    return x_actor_id.strip() or None
