"""Emission ordering for lowered records and globals.

Rust does not care about item order, but the emitted file reads in
dependency order: a record follows every record it contains by value, ties
keep source order.  A by-value containment cycle cannot be laid out at all
and aborts emission of the unit.
"""

from __future__ import annotations

import heapq
import logging

from .diagnostics import EmissionOrderingFailure
from .target_ir import RustCrate, RustModule, RustRecord

logger = logging.getLogger(__name__)


def all_records(module: RustModule) -> list[RustRecord]:
    """Every record of ``module`` and its descendants."""
    records = list(module.records)
    for child in module.modules:
        records.extend(all_records(child))
    return records


def check_acyclic(records: list[RustRecord]) -> None:
    """Raise ``EmissionOrderingFailure`` when records contain each other by value."""
    by_id = {r.record_id: r for r in records}
    WHITE, GREY, BLACK = 0, 1, 2
    color = {rid: WHITE for rid in by_id}
    stack: list[int] = []

    def visit(rid: int) -> None:
        color[rid] = GREY
        stack.append(rid)
        for dep in by_id[rid].deps:
            if dep not in by_id:
                continue
            if color[dep] == GREY:
                cycle = stack[stack.index(dep):] + [dep]
                names = " -> ".join(by_id[c].struct.name for c in cycle)
                raise EmissionOrderingFailure(f"records contain each other by value: {names}")
            if color[dep] == WHITE:
                visit(dep)
        stack.pop()
        color[rid] = BLACK

    for record in sorted(records, key=lambda r: r.order):
        if color[record.record_id] == WHITE:
            visit(record.record_id)


def order_records(records: list[RustRecord]) -> list[RustRecord]:
    """Kahn's algorithm over in-module dependencies, smallest source order first."""
    by_id = {r.record_id: r for r in records}
    pending = {
        r.record_id: {d for d in r.deps if d in by_id and d != r.record_id} for r in records
    }
    dependents: dict[int, list[int]] = {rid: [] for rid in by_id}
    for rid, deps in pending.items():
        for dep in deps:
            dependents[dep].append(rid)
    ready = [(by_id[rid].order, rid) for rid, deps in pending.items() if not deps]
    heapq.heapify(ready)
    ordered: list[RustRecord] = []
    while ready:
        _, rid = heapq.heappop(ready)
        ordered.append(by_id[rid])
        for dependent in dependents[rid]:
            pending[dependent].discard(rid)
            if not pending[dependent]:
                heapq.heappush(ready, (by_id[dependent].order, dependent))
    if len(ordered) != len(records):
        stuck = sorted(by_id[rid].struct.name for rid, deps in pending.items() if deps)
        raise EmissionOrderingFailure(f"no emission order for records: {', '.join(stuck)}")
    return ordered


def order_module(module: RustModule) -> None:
    module.records = order_records(module.records)
    module.globals = sorted(module.globals, key=lambda g: g.order)
    for child in module.modules:
        order_module(child)


def order_crate(crate: RustCrate) -> RustCrate:
    """Check the whole crate for containment cycles, then order each module."""
    records = all_records(crate.root)
    check_acyclic(records)
    order_module(crate.root)
    logger.debug("Ordered %d records", len(records))
    return crate
