"""Proxy endpoint: Azure OpenAI-compatible deployments, metered per tenant."""

import logging

import httpx
from fastapi import APIRouter, BackgroundTasks, Request, Response
from fastapi.responses import StreamingResponse

from app.api.deps import Session, SessionFactory, UpstreamClient
from app.core import diagnostics
from app.core.config import get_settings
from app.core.errors import ModelNotPriced, UpstreamUnreachable
from app.core.pricing import pricing_table
from app.services import recorder
from app.services.directory import Resolution, tenant_directory
from app.services.forwarding import (
    InspectedBody,
    Timings,
    UsageCapture,
    build_upstream_request,
    extract_buffered_usage,
    filter_response_headers,
    inspect_body,
    note_missing_usage,
    relay_stream,
    resolve_target,
)
from app.services.ledger import budget_ledger

logger = logging.getLogger(__name__)

router = APIRouter(tags=["proxy"])


@router.post("/openai/deployments/{deployment}/{rest:path}")
async def forward(
    deployment: str,
    rest: str,
    request: Request,
    session: Session,
    session_factory: SessionFactory,
    client: UpstreamClient,
    background_tasks: BackgroundTasks,
) -> Response:
    """Authenticate, admit, forward, and meter one upstream call.

    Everything up to the upstream send can still fail with a JSON error.
    Once upstream headers arrive the caller gets the upstream status, headers
    and body as-is; recording happens afterwards and cannot affect it.
    """
    timings = Timings()
    settings = get_settings()

    resolution = await tenant_directory.resolve(
        request.headers.get("api-key", ""),
        session,
        request.headers.get(settings.user_header),
    )
    await budget_ledger.admit(session, resolution)
    target = resolve_target(resolution.tenant)
    body = inspect_body(await request.body())

    if settings.reject_unpriced_models and body.model and not pricing_table.is_priced(body.model):
        diagnostics.record_unknown_model(body.model)
        raise ModelNotPriced(body.model)

    upstream_request = build_upstream_request(
        client,
        target,
        deployment,
        rest,
        request.url.query,
        body.content,
        accept=request.headers.get("accept"),
    )

    timings.mark_forwarded()
    try:
        upstream = await client.send(upstream_request, stream=True)
    except httpx.HTTPError as exc:
        logger.warning("Upstream send failed for deployment %s: %s", deployment, exc)
        raise UpstreamUnreachable(str(exc) or exc.__class__.__name__) from exc
    timings.mark_first_byte()

    headers = filter_response_headers(upstream.headers)

    def finish(capture: UsageCapture) -> None:
        usage_missing = note_missing_usage(capture, upstream.status_code, deployment)
        recorder.schedule(
            _usage_record(resolution, deployment, rest, body, upstream.status_code,
                          capture, usage_missing, timings),
            session_factory,
        )

    # A coroutine, so Starlette runs it on the event loop rather than in a thread
    async def finish_after_send(capture: UsageCapture) -> None:
        finish(capture)

    if body.is_stream:
        return StreamingResponse(
            relay_stream(upstream, timings, finish),
            status_code=upstream.status_code,
            headers=headers,
        )

    try:
        content = await upstream.aread()
    except httpx.HTTPError as exc:
        logger.warning("Upstream body read failed for deployment %s: %s", deployment, exc)
        raise UpstreamUnreachable(str(exc) or exc.__class__.__name__) from exc
    finally:
        await upstream.aclose()
    timings.mark_completed()

    background_tasks.add_task(finish_after_send, extract_buffered_usage(content))
    return Response(content=content, status_code=upstream.status_code, headers=headers)


def _usage_record(
    resolution: Resolution,
    deployment: str,
    rest: str,
    body: InspectedBody,
    status_code: int,
    capture: UsageCapture,
    usage_missing: bool,
    timings: Timings,
) -> recorder.UsageRecord:
    return recorder.UsageRecord(
        tenant_id=resolution.tenant.id,
        user_id=resolution.user_id,
        # The response reports the concrete model version; fall back to the request
        model=capture.model or body.model or deployment,
        deployment=deployment,
        endpoint=rest,
        prompt_tokens=capture.prompt_tokens,
        completion_tokens=capture.completion_tokens,
        status_code=status_code,
        is_stream=body.is_stream,
        usage_missing=usage_missing,
        **timings.as_ms(),
    )
