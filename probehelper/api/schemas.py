from pydantic import BaseModel
from typing import Literal
from ..probe.helper import ProbeOutcome, ProbeResult

# Any non-2xx answer is a NACK to a CloudEvents sender
OUTCOME_STATUS = {
    ProbeOutcome.ACK: 200,
    ProbeOutcome.INVALID: 400,
    ProbeOutcome.UNRECOGNIZED: 400,
    ProbeOutcome.COLLISION: 409,
    ProbeOutcome.TRIGGER_FAILED: 502,
    ProbeOutcome.SHUTDOWN: 503,
    ProbeOutcome.TIMED_OUT: 504,
}

class ProbeResponse(BaseModel):
    result: Literal["ACK", "NACK"]
    outcome: str
    id: str | None = None
    reason: str | None = None

    @classmethod
    def from_result(cls, result: ProbeResult) -> "ProbeResponse":
        return cls(
            result="ACK" if result.ack else "NACK",
            outcome=result.outcome.value,
            id=result.id,
            reason=result.reason,
        )

class ReceiptResponse(BaseModel):
    status: Literal["accepted"] = "accepted"
    matched: bool = False
