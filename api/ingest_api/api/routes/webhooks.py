import json
import logging
from collections.abc import Mapping
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ingest_api.core.config import Settings, get_settings
from ingest_api.core.signatures import extract_signature, verify_webhook_signature
from ingest_api.services.errors import AuthenticityError
from ingest_api.services.extraction import get_extractor
from ingest_api.services.repository import RepositoryUnavailableError, get_repository
from ingest_api.services.webhook_events import parse_webhook_event
from ingest_api.services.webhook_receiver import handle_webhook_event

router = APIRouter()
logger = logging.getLogger(__name__)

_UNPARSEABLE = object()


@router.post("/webhook")
async def receive_crawl_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    repository=Depends(get_repository),
    extractor=Depends(get_extractor),
) -> dict[str, Any]:
    raw_body = await request.body()
    parsed = _parse_json(raw_body)

    if not settings.webhook_skip_signature and not settings.webhook_secret:
        logger.error("webhook rejected reason=secret_not_configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="webhook secret is not configured",
        )

    try:
        authenticate_webhook(raw_body, parsed, request.headers, settings)
    except AuthenticityError as exc:
        logger.warning("webhook rejected reason=signature error=%s", exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc

    if not isinstance(parsed, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="webhook body must be a JSON object")

    event = parse_webhook_event(parsed)
    try:
        return await handle_webhook_event(event, repository=repository, extractor=extractor)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc


def authenticate_webhook(raw_body: bytes, parsed: Any, headers: Mapping[str, str], settings: Settings) -> None:
    if settings.webhook_skip_signature:
        return

    signature = extract_signature(headers)
    if not signature:
        raise AuthenticityError("missing webhook signature")

    check = verify_webhook_signature(
        raw_body,
        signature,
        settings.webhook_secret or "",
        parsed_body=None if parsed is _UNPARSEABLE else parsed,
        allow_reserialized=settings.webhook_allow_reserialized_body,
    )
    if not check.valid:
        raise AuthenticityError("invalid webhook signature")
    if check.method == "reserialized":
        logger.info("webhook signature matched re-serialized body")


def _parse_json(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body)
    except (UnicodeDecodeError, ValueError):
        return _UNPARSEABLE
