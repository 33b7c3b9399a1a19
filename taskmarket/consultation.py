"""Paid advisor consultation run once per worker role before its first deliverable.

Five messages land on the log: request, quote, accept, payment and answer. The two
steps that wait on the advisor have synthetic completions, so the parent workflow
always moves forward even when the advisor process never shows up.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from .config import ConsultationConfig
from .escrow import EscrowError, EscrowService
from .message_log import LogPublisher, MessageLog
from .normalizer import answer_text, quote_fee
from .poller import LogFilter, poll_log
from .schemas import (
    CONSULTATION_ACCEPT,
    CONSULTATION_PAYMENT,
    CONSULTATION_QUOTE,
    CONSULTATION_REQUEST,
    CONSULTATION_RESPONSE,
    ConsultationRecord,
    Session,
    StepOutcome,
)
from .settlement import cap_to_escrow, escrow_snapshot

logger = logging.getLogger("uvicorn.error")

Emit = Callable[[str, Dict[str, Any]], Awaitable[Any]]


@dataclass
class ConsultationResult:
    quote: StepOutcome
    answer: StepOutcome
    fee: float
    tx_ref: Optional[str]

    @property
    def answer_text(self) -> str:
        return answer_text(self.answer.message)


class ConsultationProtocol:
    def __init__(
        self,
        log: MessageLog,
        publisher: LogPublisher,
        escrow: EscrowService,
        config: ConsultationConfig,
        *,
        escrow_account: str,
        advisor_account: str,
        interval_s: float,
        emit: Optional[Emit] = None,
    ):
        self.log = log
        self.publisher = publisher
        self.escrow = escrow
        self.config = config
        self.escrow_account = escrow_account
        self.advisor_account = advisor_account
        self.interval_s = interval_s
        self.emit = emit

    async def _notify(self, event_type: str, payload: Dict[str, Any]) -> None:
        if self.emit:
            await self.emit(event_type, payload)

    async def run(self, session: Session, role: str) -> ConsultationResult:
        worker = session.accepted[role].account
        question = self.config.question_template.format(role=role, task_ref=session.task_ref)
        await self._notify("consultation", {"role": role, "step": "request"})
        request = await self.publisher.publish(
            session,
            {
                "type": CONSULTATION_REQUEST,
                "sender": worker,
                "role": role,
                "question": question,
                "offeredFee": self.config.offered_fee,
            },
        )

        quote = await self._await_quote(session, role, request.sequence_number)
        fee = quote_fee(quote.message, self.config.default_fee)

        accept = await self.publisher.publish(
            session,
            {"type": CONSULTATION_ACCEPT, "sender": worker, "role": role, "fee": fee},
        )

        tx_ref = await self._pay_advisor(session, role, fee)

        answer_timeout = self.config.short_answer_timeout_s if quote.synthesized else self.config.answer_timeout_s
        answer = await self._await_answer(session, role, accept.sequence_number, answer_timeout)

        result = ConsultationResult(quote=quote, answer=answer, fee=fee, tx_ref=tx_ref)
        session.consultations.append(
            ConsultationRecord(
                role=role,
                fee=fee,
                tx_ref=tx_ref,
                quote_provenance=quote.provenance,
                answer_provenance=answer.provenance,
                answer=result.answer_text,
            )
        )
        await self._notify(
            "consultation",
            {
                "role": role,
                "step": "complete",
                "fee": fee,
                "quote": quote.provenance,
                "answer": answer.provenance,
            },
        )
        return result

    async def _await_quote(self, session: Session, role: str, after_seq: int) -> StepOutcome:
        found = await poll_log(
            self.log,
            LogFilter(
                type=CONSULTATION_QUOTE,
                role=role,
                request_id=session.request_id,
                sender=self.advisor_account,
                after_seq=after_seq,
            ),
            1,
            self.config.quote_timeout_s,
            interval_s=self.interval_s,
            emit=self.emit,
        )
        if found:
            session.observe(found[0].sequence_number)
            return StepOutcome(provenance="real", message=found[0])
        logger.info("No advisor quote for %s in %s; synthesizing default fee", role, session.request_id)
        message = await self.publisher.publish(
            session,
            {
                "type": CONSULTATION_QUOTE,
                "sender": self.advisor_account,
                "role": role,
                "fee": self.config.default_fee,
                "synthetic": True,
            },
        )
        return StepOutcome(provenance="synthesized", message=message)

    async def _pay_advisor(self, session: Session, role: str, fee: float) -> Optional[str]:
        amount = cap_to_escrow(session, fee)
        if amount <= 0:
            return None
        try:
            tx_ref = await self.escrow.transfer(self.escrow_account, self.advisor_account, amount)
        except EscrowError as exc:
            logger.warning("Consultation fee transfer for %s failed (continuing): %s", role, exc)
            await self._notify("log", {"level": "warning", "msg": f"Consultation fee for {role} not paid: {exc}"})
            return None
        session.escrow_released = round(session.escrow_released + amount, 6)
        await self.publisher.publish(
            session,
            {
                "type": CONSULTATION_PAYMENT,
                "sender": "server",
                "role": role,
                "toAccountId": self.advisor_account,
                "amount": amount,
                "txRef": tx_ref,
            },
        )
        await self._notify("escrow_update", escrow_snapshot(session))
        return tx_ref

    async def _await_answer(self, session: Session, role: str, after_seq: int, timeout_s: float) -> StepOutcome:
        found = await poll_log(
            self.log,
            LogFilter(
                type=CONSULTATION_RESPONSE,
                role=role,
                request_id=session.request_id,
                sender=self.advisor_account,
                after_seq=after_seq,
            ),
            1,
            timeout_s,
            interval_s=self.interval_s,
            emit=self.emit,
        )
        if found:
            session.observe(found[0].sequence_number)
            return StepOutcome(provenance="real", message=found[0])
        logger.info("No advisor answer for %s in %s; synthesizing fallback", role, session.request_id)
        message = await self.publisher.publish(
            session,
            {
                "type": CONSULTATION_RESPONSE,
                "sender": self.advisor_account,
                "role": role,
                "answer": self.config.fallback_answer,
                "synthetic": True,
            },
        )
        return StepOutcome(provenance="synthesized", message=message)
