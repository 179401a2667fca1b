"""JSON-compatible encoding of escrow records."""

from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Optional

from .types import (
    Agreement,
    AgreementConditions,
    AgreementTerms,
    Dispute,
    DisputeResolutionMode,
    DisputeStatus,
    DueAction,
    DueStatus,
    DueWork,
    EscrowStats,
    EscrowTransaction,
    Evidence,
    EvidenceKind,
    Fees,
    Party,
    Resolution,
    Subject,
    TrackingInfo,
    TransactionStatus,
)


def _ts_to_json(v: Optional[datetime]) -> Optional[str]:
    return v.isoformat() if v is not None else None


def _ts_from_json(v: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(v) if v else None


# --- transaction ---


def transaction_to_json(record: EscrowTransaction) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        "id": record.id,
        "buyer_id": record.buyer_id,
        "seller_id": record.seller_id,
        "subject": {"item_id": record.subject.item_id, "amount": record.subject.amount},
        "fees": asdict(record.fees),
        "status": record.status.value,
        "created_at": _ts_to_json(record.created_at),
        "updated_at": _ts_to_json(record.updated_at),
        "funded_at": _ts_to_json(record.funded_at),
        "shipped_at": _ts_to_json(record.shipped_at),
        "delivered_at": _ts_to_json(record.delivered_at),
        "completed_at": _ts_to_json(record.completed_at),
        "payment_method": record.payment_method,
        "dispute_id": record.dispute_id,
        "refund_amount": record.refund_amount,
        "revision": record.revision,
    }
    if record.tracking is not None:
        result["tracking"] = {
            "carrier": record.tracking.carrier,
            "tracking_number": record.tracking.tracking_number,
            "status": record.tracking.status,
            "last_update": _ts_to_json(record.tracking.last_update),
        }
    else:
        result["tracking"] = None
    return result


def transaction_from_json(data: Dict[str, Any]) -> EscrowTransaction:
    tracking = data.get("tracking")
    return EscrowTransaction(
        id=data["id"],
        buyer_id=data["buyer_id"],
        seller_id=data["seller_id"],
        subject=Subject(item_id=data["subject"]["item_id"], amount=data["subject"]["amount"]),
        fees=Fees(**data["fees"]),
        status=TransactionStatus(data["status"]),
        created_at=_ts_from_json(data["created_at"]),
        updated_at=_ts_from_json(data.get("updated_at") or data["created_at"]),
        funded_at=_ts_from_json(data.get("funded_at")),
        shipped_at=_ts_from_json(data.get("shipped_at")),
        delivered_at=_ts_from_json(data.get("delivered_at")),
        completed_at=_ts_from_json(data.get("completed_at")),
        payment_method=data.get("payment_method"),
        tracking=TrackingInfo(
            carrier=tracking["carrier"],
            tracking_number=tracking["tracking_number"],
            status=tracking["status"],
            last_update=_ts_from_json(tracking["last_update"]),
        ) if tracking else None,
        dispute_id=data.get("dispute_id"),
        refund_amount=data.get("refund_amount"),
        revision=data.get("revision", 0),
    )


# --- agreement ---


def agreement_to_json(agreement: Agreement) -> Dict[str, Any]:
    terms = agreement.terms
    return {
        "transaction_id": agreement.transaction_id,
        "terms": {
            "inspection_period_days": terms.inspection_period_days,
            "return_policy": terms.return_policy,
            "shipping_responsibility": terms.shipping_responsibility.value,
            "insurance_required": terms.insurance_required,
            "dispute_resolution": terms.dispute_resolution.value,
        },
        "conditions": asdict(agreement.conditions),
        "signed_at": _ts_to_json(agreement.signed_at),
        "buyer_signed": agreement.buyer_signed,
        "seller_signed": agreement.seller_signed,
        "revision": agreement.revision,
    }


def agreement_from_json(data: Dict[str, Any]) -> Agreement:
    t = data["terms"]
    return Agreement(
        transaction_id=data["transaction_id"],
        terms=AgreementTerms(
            inspection_period_days=t["inspection_period_days"],
            return_policy=t["return_policy"],
            shipping_responsibility=Party(t["shipping_responsibility"]),
            insurance_required=t["insurance_required"],
            dispute_resolution=DisputeResolutionMode(t["dispute_resolution"]),
        ),
        conditions=AgreementConditions(**data["conditions"]),
        signed_at=_ts_from_json(data["signed_at"]),
        buyer_signed=data.get("buyer_signed", False),
        seller_signed=data.get("seller_signed", False),
        revision=data.get("revision", 0),
    )


# --- dispute ---


def dispute_to_json(dispute: Dispute) -> Dict[str, Any]:
    resolution = dispute.resolution
    return {
        "id": dispute.id,
        "transaction_id": dispute.transaction_id,
        "initiated_by": dispute.initiated_by.value,
        "initiator_id": dispute.initiator_id,
        "reason": dispute.reason,
        "description": dispute.description,
        "status": dispute.status.value,
        "created_at": _ts_to_json(dispute.created_at),
        "evidence": [
            {"kind": e.kind.value, "reference": e.reference, "note": e.note}
            for e in dispute.evidence
        ],
        "resolution": {
            "winner": resolution.winner.value,
            "refund_amount": resolution.refund_amount,
            "reason": resolution.reason,
        } if resolution else None,
        "resolved_at": _ts_to_json(dispute.resolved_at),
        "settled_legs": list(dispute.settled_legs),
        "revision": dispute.revision,
    }


def evidence_from_json(data: Dict[str, Any]) -> Evidence:
    return Evidence(
        kind=EvidenceKind(data["kind"]),
        reference=data["reference"],
        note=data.get("note", ""),
    )


def dispute_from_json(data: Dict[str, Any]) -> Dispute:
    r = data.get("resolution")
    return Dispute(
        id=data["id"],
        transaction_id=data["transaction_id"],
        initiated_by=Party(data["initiated_by"]),
        initiator_id=data["initiator_id"],
        reason=data["reason"],
        description=data.get("description", ""),
        status=DisputeStatus(data["status"]),
        created_at=_ts_from_json(data["created_at"]),
        evidence=[evidence_from_json(e) for e in data.get("evidence", [])],
        resolution=Resolution(
            winner=Party(r["winner"]),
            refund_amount=r["refund_amount"],
            reason=r["reason"],
        ) if r else None,
        resolved_at=_ts_from_json(data.get("resolved_at")),
        settled_legs=list(data.get("settled_legs", [])),
        revision=data.get("revision", 0),
    )


# --- scheduler / stats ---


def due_work_to_json(work: DueWork) -> Dict[str, Any]:
    return {
        "transaction_id": work.transaction_id,
        "action": work.action.value,
        "due_at": _ts_to_json(work.due_at),
        "status": work.status.value,
        "attempts": work.attempts,
        "last_error": work.last_error,
    }


def due_work_from_json(data: Dict[str, Any]) -> DueWork:
    return DueWork(
        transaction_id=data["transaction_id"],
        action=DueAction(data["action"]),
        due_at=_ts_from_json(data["due_at"]),
        status=DueStatus(data.get("status", DueStatus.SCHEDULED.value)),
        attempts=data.get("attempts", 0),
        last_error=data.get("last_error"),
    )


def stats_to_json(stats: EscrowStats) -> Dict[str, Any]:
    return asdict(stats)
