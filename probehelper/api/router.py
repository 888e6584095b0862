from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
import structlog
from .schemas import OUTCOME_STATUS, ProbeResponse, ReceiptResponse
from ..event_models import EnvelopeError, EventEnvelope
from ..probe.helper import ProbeHelper

log = structlog.get_logger()

probe_router = APIRouter()
receiver_router = APIRouter()


def get_helper(request: Request) -> ProbeHelper:
    return request.app.state.helper


@probe_router.post("/", response_model=ProbeResponse)
async def handle_probe(request: Request):
    """
    Run one probe round trip.

    Blocks until the platform delivered the triggered event back to the
    receiver (200) or the probe failed (non-2xx).
    """
    body = await request.body()
    try:
        event = EventEnvelope.from_http(request.headers, body)
    except EnvelopeError as e:
        log.warning("probe.malformed", error=str(e))
        response = ProbeResponse(result="NACK", outcome="invalid", reason=str(e))
        return JSONResponse(status_code=400, content=response.model_dump())

    result = await get_helper(request).probe(event)
    response = ProbeResponse.from_result(result)
    return JSONResponse(status_code=OUTCOME_STATUS[result.outcome], content=response.model_dump())


@receiver_router.post("/", status_code=202, response_model=ReceiptResponse)
@receiver_router.post("/{target:path}", status_code=202, response_model=ReceiptResponse)
async def handle_delivery(request: Request, target: str = ""):
    """
    Accept an event delivered by the platform.

    Receipt is always acknowledged, matched or not.
    """
    body = await request.body()
    try:
        event = EventEnvelope.from_http(request.headers, body)
    except EnvelopeError as e:
        log.warning("receiver.malformed", target=target, error=str(e))
        return ReceiptResponse()

    matched = await get_helper(request).receive(event)
    return ReceiptResponse(matched=matched)
