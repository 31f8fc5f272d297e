"""REST fallback for sync.

Same engine as the socket: a client that cannot hold a WebSocket open (or a
UI action attempting a direct write) can pull and push over plain HTTP.
"""

import logging
from typing import Optional

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi import Query
from fastapi import Request
from fastapi import status

from sgisync.dependencies.auth import AuthenticatedUser
from sgisync.dependencies.auth import get_current_user
from sgisync.exceptions import WatermarkError
from sgisync.schemas.schemas import PushRequestBody

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"])


@router.get("/changes")
async def read_changes(
    request: Request,
    since: Optional[str] = Query(default=None, description="ISO-8601 watermark; omit for a full pull"),
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    """Everything changed after *since*, plus the watermark to store next."""
    try:
        result = await request.app.state.engine.pull_since(since, current_user)
    except WatermarkError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return result.to_wire()


@router.post("/push")
async def push_changes(
    request: Request,
    body: PushRequestBody,
    current_user: AuthenticatedUser = Depends(get_current_user),
):
    """Apply queued changes in order; always 200 with one result per change."""
    result = await request.app.state.engine.apply_batch(body.changes, current_user)
    return result.to_wire()
