"""Persist routes: key/value storage over HTTP."""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from core.container import container
from core.database import Database
from core.logging import get_logger
from core.persist import PersistDriver

logger = get_logger(__name__)
router = APIRouter(tags=["persist"])


def get_database() -> Database:
    return container.database()


def get_persist() -> PersistDriver:
    return container.persist()


class PersistedBuffer(BaseModel):
    buffer: str


async def _body_text(request: Request) -> str:
    """Request body as text; 400 when it is not UTF-8."""
    body = await request.body()
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError as e:
        logger.warning("Rejected non UTF-8 body", path=request.url.path, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Request body must be UTF-8 text"
        ) from e


def _value_response(value: Optional[str]) -> Response:
    if value is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    return PlainTextResponse(value)


@router.put("/persist/{tag}")
async def set_value(tag: str, body: str = Depends(_body_text), persist: PersistDriver = Depends(get_persist)):
    """Store the request body under tag."""
    await persist.set(tag, body)
    return Response(status_code=status.HTTP_200_OK)


@router.put("/persist/{tag}/{seconds}")
async def set_value_expiring(
    tag: str,
    seconds: int,
    body: str = Depends(_body_text),
    persist: PersistDriver = Depends(get_persist)
):
    """Store the request body under tag for `seconds`."""
    await persist.set(tag, body, expires=seconds)
    return Response(status_code=status.HTTP_200_OK)


@router.put("/create/{tag}")
async def create_value(tag: str, body: str = Depends(_body_text), persist: PersistDriver = Depends(get_persist)):
    """Store the request body under tag; 409 if tag already exists."""
    await persist.create(tag, body)
    return Response(status_code=status.HTTP_200_OK)


@router.get("/persist/{tag}")
async def get_value(tag: str, persist: PersistDriver = Depends(get_persist)):
    """Return the stored body, or 204 if tag is absent or expired."""
    return _value_response(await persist.get(tag, str))


@router.delete("/persist/{tag}")
async def remove_value(tag: str, persist: PersistDriver = Depends(get_persist)):
    await persist.remove(tag)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/codable/{tag}")
async def set_codable(tag: str, body: str = Depends(_body_text), persist: PersistDriver = Depends(get_persist)):
    """Store the request body wrapped in a model."""
    await persist.set(tag, PersistedBuffer(buffer=body))
    return Response(status_code=status.HTTP_200_OK)


@router.get("/codable/{tag}")
async def get_codable(tag: str, persist: PersistDriver = Depends(get_persist)):
    value = await persist.get(tag, PersistedBuffer)
    return _value_response(value.buffer if value else None)


@router.get("/persist-stats")
async def persist_stats(persist: PersistDriver = Depends(get_persist)):
    """Row counts for the persist table on the store's database."""
    return await persist.stats()
