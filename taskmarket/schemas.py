from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


IDLE = "IDLE"
REQUEST = "REQUEST"
BIDDING = "BIDDING"
AWAITING_BID_APPROVAL = "AWAITING_BID_APPROVAL"
AWAITING_REVIEW = "AWAITING_REVIEW"
RELEASING = "RELEASING"
COMPLETE = "COMPLETE"
ERROR = "ERROR"
TERMINAL_STATES = {COMPLETE, ERROR}

Provenance = Literal["real", "synthesized"]

# Log message types
TASK_REQUEST = "task_request"
ESCROW_LOCK = "escrow_lock"
BID = "bid"
BID_ACCEPTED = "bid_accepted"
DELIVERABLE = "deliverable"
CLIENT_REVIEW = "client_review"
REVISION_REQUEST = "revision_request"
ESCROW_RELEASE = "escrow_release"
TASK_COMPLETE = "task_complete"
CONSULTATION_REQUEST = "consultation_request"
CONSULTATION_QUOTE = "consultation_quote"
CONSULTATION_ACCEPT = "consultation_accept"
CONSULTATION_PAYMENT = "consultation_payment"
CONSULTATION_RESPONSE = "consultation_response"

# Types no agent process needs to react to.
IGNORED_MESSAGE_TYPES = {ESCROW_LOCK, BID, ESCROW_RELEASE, CLIENT_REVIEW, TASK_COMPLETE, CONSULTATION_ACCEPT,
                        CONSULTATION_PAYMENT}


def working_state(role: str) -> str:
    return f"{role.upper()}_WORKING"


class LogRecord(BaseModel):
    sequence_number: int
    timestamp: str


class LogMessage(BaseModel):
    sequence_number: int
    timestamp: str
    raw: str


class PolledMessage(BaseModel):
    sequence_number: int
    timestamp: str
    raw: str
    parsed: Dict[str, Any]

    @property
    def type(self) -> str:
        return str(self.parsed.get("type") or "")


class Bid(BaseModel):
    request_id: str = ""
    sender: str = ""
    role: Optional[str] = None
    price: float = 0.0
    pitch: str = ""
    sender_name: str = ""
    timestamp: str = ""
    seq: int = 0

    def to_wire(self) -> Dict[str, Any]:
        return {
            "type": BID,
            "requestId": self.request_id,
            "sender": self.sender,
            "role": self.role,
            "price": self.price,
            "pitch": self.pitch,
            "senderName": self.sender_name,
            "timestamp": self.timestamp,
        }


class Deliverable(BaseModel):
    request_id: str = ""
    sender: str = ""
    role: Optional[str] = None
    content: Dict[str, Any] = Field(default_factory=dict)
    sender_name: str = ""
    timestamp: str = ""
    seq: int = 0
    round: int = 0

    def to_wire(self) -> Dict[str, Any]:
        return {
            "type": DELIVERABLE,
            "requestId": self.request_id,
            "sender": self.sender,
            "role": self.role,
            "content": self.content,
            "senderName": self.sender_name,
            "timestamp": self.timestamp,
        }


class AcceptedWorker(BaseModel):
    account: str
    price: float

    @field_validator("price")
    @classmethod
    def non_negative_price(cls, value: float) -> float:
        if value < 0:
            raise ValueError("price must be non-negative")
        return value


class BidApproval(BaseModel):
    accepted: Dict[str, AcceptedWorker] = Field(default_factory=dict)


class ReviewDecision(BaseModel):
    approved: bool = False
    score: float = 0.0
    feedback: str = ""

    @field_validator("score")
    @classmethod
    def clamp_score(cls, value: float) -> float:
        return max(0.0, min(100.0, float(value)))


class ReviewSubmission(BaseModel):
    reviews: Dict[str, ReviewDecision] = Field(default_factory=dict)


class Review(BaseModel):
    role: str
    round: int
    approved: bool
    score: float
    feedback: str = ""


class Settlement(BaseModel):
    role: str
    to_account: str
    amount: float
    tx_ref: str


class StepOutcome(BaseModel):
    provenance: Provenance
    message: PolledMessage

    @property
    def synthesized(self) -> bool:
        return self.provenance == "synthesized"


class ConsultationRecord(BaseModel):
    role: str
    fee: float
    tx_ref: Optional[str] = None
    quote_provenance: Provenance
    answer_provenance: Provenance
    answer: str = ""


class Session(BaseModel):
    request_id: str
    state: str = IDLE
    task_ref: str
    description: str = ""
    budget: float
    escrow_locked: float = 0.0
    escrow_released: float = 0.0
    bids: List[Bid] = Field(default_factory=list)
    accepted: Dict[str, AcceptedWorker] = Field(default_factory=dict)
    deliverables: Dict[str, Deliverable] = Field(default_factory=dict)
    deliverable_history: List[Deliverable] = Field(default_factory=list)
    revision_counts: Dict[str, int] = Field(default_factory=dict)
    final_roles: List[str] = Field(default_factory=list)
    reviews: List[Review] = Field(default_factory=list)
    settlements: List[Settlement] = Field(default_factory=list)
    consultations: List[ConsultationRecord] = Field(default_factory=list)
    reputation_ids: Dict[str, str] = Field(default_factory=dict)
    deliverable_anchor_seq: int = 0
    last_seq: int = 0
    error: Optional[str] = None

    @property
    def escrow_remaining(self) -> float:
        return round(self.escrow_locked - self.escrow_released, 6)

    def observe(self, seq: int) -> None:
        if seq > self.last_seq:
            self.last_seq = seq

    def latest_review(self, role: str) -> Optional[Review]:
        for review in reversed(self.reviews):
            if review.role == role:
                return review
        return None


class TriggerRequest(BaseModel):
    task_ref: str
    budget: float
    description: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("task_ref"):
            data["task_ref"] = data.get("paperUrl") or data.get("paper_url") or data.get("taskRef") or ""
        return data

    @field_validator("budget")
    @classmethod
    def positive_budget(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("budget must be positive")
        return value


class LogAppendRequest(BaseModel):
    payload: Optional[Dict[str, Any]] = None
    raw: Optional[str] = None

    @model_validator(mode="after")
    def require_body(self) -> "LogAppendRequest":
        if self.payload is None and self.raw is None:
            raise ValueError("payload or raw is required")
        return self
