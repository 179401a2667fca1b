"""YAML scenario runner.

A scenario document names its transactions up front, then drives them
through an in-memory engine step by step:

    name: happy path
    transactions:
      - {name: t1, amount: 10000}
    steps:
      - {op: create, tx: t1}
      - {op: fund, tx: t1}
      - {op: ship, tx: t1, carrier: ups, tracking_number: 1Z999}
      - {op: deliver, tx: t1}
      - {op: advance, days: 7}
      - {op: run_worker}
    expect:
      transactions:
        t1: {status: completed}
      payouts: {seller-bob: 9700}

Any step may carry `expect_error: <ErrorCode name>`; the step then passes
only if it fails with that code.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import yaml

from .config import EngineConfig
from .digest import compute_transaction_digest
from .errors import ErrorCode, EscrowError
from .serialization import dispute_to_json, evidence_from_json, transaction_to_json
from .testing import BUYER, SELLER, Harness, build_harness
from .types import AgreementConditions, Dispute, EscrowTransaction

logger = logging.getLogger(__name__)

SCENARIO_SUFFIXES = (".yaml", ".yml")


class ScenarioError(Exception):
    """Raised for malformed scenario documents."""


@dataclass
class ScenarioResult:
    name: str
    passed: bool = True
    failures: List[str] = field(default_factory=list)
    steps_run: int = 0
    transactions: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    digests: Dict[str, str] = field(default_factory=dict)
    disputes: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def fail(self, message: str) -> None:
        self.passed = False
        self.failures.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "failures": list(self.failures),
            "steps_run": self.steps_run,
            "digests": dict(self.digests),
        }


def load_scenarios(path: Union[str, Path]) -> List[Dict[str, Any]]:
    """Load every scenario document from a file or a directory of YAML files."""
    path = Path(path)
    if path.is_dir():
        files = sorted(p for p in path.iterdir() if p.suffix in SCENARIO_SUFFIXES)
    elif path.exists():
        files = [path]
    else:
        raise ScenarioError(f"no such scenario path: {path}")

    docs: List[Dict[str, Any]] = []
    for f in files:
        with f.open() as fh:
            for doc in yaml.safe_load_all(fh):
                if doc is None:
                    continue
                if not isinstance(doc, dict):
                    raise ScenarioError(f"{f.name}: scenario must be a mapping")
                doc.setdefault("name", f.stem)
                docs.append(doc)
    return docs


class _Run:
    """State of one scenario execution."""

    def __init__(self, doc: Dict[str, Any], harness: Harness):
        self.doc = doc
        self.h = harness
        self.defs: Dict[str, Dict[str, Any]] = {}
        self.ids: Dict[str, str] = {}
        self.disputes: Dict[str, str] = {}
        for entry in doc.get("transactions") or []:
            if "name" not in entry:
                raise ScenarioError("transaction definition without name")
            self.defs[entry["name"]] = entry

    def tx_id(self, step: Dict[str, Any]) -> str:
        name = step.get("tx")
        if name not in self.ids:
            raise ScenarioError(f"transaction {name!r} not created")
        return self.ids[name]

    def dispute_id(self, step: Dict[str, Any]) -> str:
        name = step.get("tx")
        if name not in self.disputes:
            raise ScenarioError(f"no dispute opened on {name!r}")
        return self.disputes[name]

    def caller(self, step: Dict[str, Any], default: str) -> str:
        name = step.get("tx")
        who = step.get("as", default)
        definition = self.defs.get(name, {})
        if who == "buyer":
            return definition.get("buyer", BUYER)
        if who == "seller":
            return definition.get("seller", SELLER)
        return who

    # --- steps ---

    async def create(self, step: Dict[str, Any]) -> None:
        name = step.get("tx")
        definition = self.defs.get(name)
        if definition is None:
            raise ScenarioError(f"undefined transaction {name!r}")
        conditions = definition.get("conditions")
        record = await self.h.engine.create(
            definition.get("buyer", BUYER),
            definition.get("seller", SELLER),
            definition.get("item", f"item-{name}"),
            definition.get("amount"),
            inspection_period_days=definition.get("inspection_days"),
            dispute_resolution=definition.get("dispute_resolution", "automatic"),
            conditions=AgreementConditions(**conditions) if conditions else None,
        )
        self.ids[name] = record.id

    async def fund(self, step: Dict[str, Any]) -> None:
        await self.h.engine.fund(
            self.tx_id(step), self.caller(step, "buyer"), step.get("method", "card")
        )

    async def ship(self, step: Dict[str, Any]) -> None:
        await self.h.engine.ship(
            self.tx_id(step),
            self.caller(step, "seller"),
            step.get("carrier", "ups"),
            str(step.get("tracking_number", "1Z0000000000")),
        )

    async def carrier_update(self, step: Dict[str, Any]) -> None:
        await self.h.engine.record_carrier_update(self.tx_id(step), step.get("status"))

    async def deliver(self, step: Dict[str, Any]) -> None:
        await self.h.engine.confirm_delivery(self.tx_id(step), self.caller(step, "buyer"))

    async def accept(self, step: Dict[str, Any]) -> None:
        await self.h.engine.accept(self.tx_id(step), self.caller(step, "buyer"))

    async def advance(self, step: Dict[str, Any]) -> None:
        self.h.clock.advance(
            timedelta(
                days=step.get("days", 0),
                hours=step.get("hours", 0),
                minutes=step.get("minutes", 0),
                seconds=step.get("seconds", 0),
            )
        )

    async def run_worker(self, step: Dict[str, Any]) -> None:
        await self.h.worker.run_due()

    async def open_dispute(self, step: Dict[str, Any]) -> None:
        dispute = await self.h.engine.disputes.open(
            self.tx_id(step),
            self.caller(step, "buyer"),
            step.get("reason"),
            step.get("description", ""),
            [evidence_from_json(e) for e in step.get("evidence", [])],
        )
        self.disputes[step["tx"]] = dispute.id

    async def investigate(self, step: Dict[str, Any]) -> None:
        await self.h.engine.disputes.start_investigation(self.dispute_id(step))

    async def add_evidence(self, step: Dict[str, Any]) -> None:
        await self.h.engine.disputes.add_evidence(
            self.dispute_id(step),
            self.caller(step, "buyer"),
            [evidence_from_json(e) for e in step.get("evidence", [])],
        )

    async def resolve(self, step: Dict[str, Any]) -> None:
        await self.h.engine.disputes.resolve(
            self.dispute_id(step),
            step.get("winner"),
            step.get("refund_amount", 0),
            step.get("reason", "arbitration decision"),
        )

    async def close(self, step: Dict[str, Any]) -> None:
        await self.h.engine.disputes.close(self.dispute_id(step), self.caller(step, "buyer"))

    async def processor_fault(self, step: Dict[str, Any]) -> None:
        target = {"payments": self.h.payments, "payouts": self.h.payouts}.get(
            step.get("processor", "payouts")
        )
        if target is None:
            raise ScenarioError(f"unknown processor {step.get('processor')!r}")
        count = step.get("count", 1)
        if step.get("mode", "error") == "decline":
            target.decline_next(count)
        else:
            target.fail_next(count, op=step.get("call"))

    def handler(self, op: str) -> Callable[[Dict[str, Any]], Any]:
        if op not in STEP_OPS:
            raise ScenarioError(f"unknown step op {op!r}")
        return getattr(self, op)


STEP_OPS = frozenset({
    "create",
    "fund",
    "ship",
    "carrier_update",
    "deliver",
    "accept",
    "advance",
    "run_worker",
    "open_dispute",
    "investigate",
    "add_evidence",
    "resolve",
    "close",
    "processor_fault",
})


async def run_scenario(
    doc: Dict[str, Any], config: Optional[EngineConfig] = None
) -> ScenarioResult:
    """Execute one scenario document and check its expectations."""
    result = ScenarioResult(name=doc.get("name", "unnamed"))
    run = _Run(doc, build_harness(config))

    for index, step in enumerate(doc.get("steps") or [], start=1):
        if not isinstance(step, dict) or "op" not in step:
            raise ScenarioError(f"step {index}: expected a mapping with 'op'")
        op = step["op"]
        expected_error = step.get("expect_error")
        if expected_error is not None and expected_error not in ErrorCode.__members__:
            raise ScenarioError(f"step {index}: unknown error code {expected_error!r}")
        handler = run.handler(op)
        result.steps_run = index
        try:
            await handler(step)
        except EscrowError as exc:
            if expected_error is None:
                result.fail(f"step {index} ({op}): unexpected {exc}")
                break
            if exc.code.name != expected_error:
                result.fail(f"step {index} ({op}): expected {expected_error}, got {exc.code.name}")
                break
            logger.debug(f"step {index} ({op}) failed as expected: {exc}")
            continue
        if expected_error is not None:
            result.fail(f"step {index} ({op}): expected {expected_error}, got success")
            break

    await _collect(run, result)
    if result.passed:
        _check_expectations(run, doc.get("expect") or {}, result)
    logger.info(f"Scenario {result.name}: {'PASS' if result.passed else 'FAIL'}")
    return result


async def _collect(run: _Run, result: ScenarioResult) -> None:
    for name, tx_id in run.ids.items():
        record: EscrowTransaction = await run.h.engine.get(tx_id)
        result.transactions[name] = transaction_to_json(record)
        result.digests[name] = compute_transaction_digest(record)
    for name, dispute_id in run.disputes.items():
        dispute: Dispute = await run.h.engine.disputes.get(dispute_id)
        result.disputes[name] = dispute_to_json(dispute)


def _check_fields(
    label: str, actual: Dict[str, Any], expected: Dict[str, Any], result: ScenarioResult
) -> None:
    for key, want in expected.items():
        if key == "digest":
            continue
        have = actual.get(key)
        if isinstance(want, dict) and isinstance(have, dict):
            _check_fields(f"{label}.{key}", have, want, result)
        elif have != want:
            result.fail(f"{label}.{key}: expected {want!r}, got {have!r}")


def _check_expectations(run: _Run, expect: Dict[str, Any], result: ScenarioResult) -> None:
    for name, fields in (expect.get("transactions") or {}).items():
        if name not in result.transactions:
            result.fail(f"transaction {name!r} was never created")
            continue
        _check_fields(name, result.transactions[name], fields, result)
        if "digest" in fields and fields["digest"] != result.digests[name]:
            result.fail(f"{name}.digest: expected {fields['digest']}, got {result.digests[name]}")

    for name, fields in (expect.get("disputes") or {}).items():
        if name not in result.disputes:
            result.fail(f"no dispute on {name!r}")
            continue
        _check_fields(f"dispute {name}", result.disputes[name], fields, result)

    totals = (
        ("charges", run.h.payments, "charge"),
        ("payouts", run.h.payouts, "payout"),
        ("refunds", run.h.payouts, "refund"),
    )
    for key, processor, op in totals:
        for party, want in (expect.get(key) or {}).items():
            have = processor.total(op, party)
            if have != want:
                result.fail(f"{key}[{party}]: expected {want}, got {have}")

    for party, want in (expect.get("notifications") or {}).items():
        have = run.h.notifier.for_user(party)
        if have != list(want):
            result.fail(f"notifications[{party}]: expected {list(want)}, got {have}")


def run_path(
    path: Union[str, Path],
    config: Optional[EngineConfig] = None,
    stop_on_failure: bool = False,
) -> List[ScenarioResult]:
    """Run every scenario under `path`; malformed documents count as failures."""
    results = []
    for doc in load_scenarios(path):
        try:
            results.append(asyncio.run(run_scenario(doc, config)))
        except ScenarioError as exc:
            failed = ScenarioResult(name=doc.get("name", "unnamed"))
            failed.fail(f"malformed scenario: {exc}")
            results.append(failed)
        if stop_on_failure and not results[-1].passed:
            break
    return results
