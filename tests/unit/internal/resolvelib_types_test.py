from __future__ import annotations

import logging
from typing import Any

import pytest

from project_lock_engine.internal.resolvelib_types import (
    LockResolutionReporter,
    ResolverCandidate,
    ResolverRequirement,
    identifier_for,
    split_identifier,
)
from project_lock_engine.model.resolution import RequirementSpec, ResolutionCancelled
from unit.helpers.metadata_helper import fake_key

###############################################################################
# BRANCH LEDGER
###############################################################################
"""
## identifier_for / split_identifier
B01: no extras -> bare name
B02: extras -> "name[e1,e2]" with sorted extras; split inverts it

## ResolverRequirement / ResolverCandidate
B03: unpinned requirement renders as its spec
B04: pinned requirement renders version and filename
B05: mapping round trip keeps pin and extras

## LockResolutionReporter
B06: rounds and backtracks are counted
B07: should_cancel() -> ResolutionCancelled at the start of a round
"""

IDENTIFIER_CASES = [
    {"id": "bare", "name": "foo", "extras": frozenset(), "identifier": "foo"},
    {"id": "one-extra", "name": "foo", "extras": frozenset({"x"}), "identifier": "foo[x]"},
    {"id": "sorted-extras", "name": "foo", "extras": frozenset({"z", "a"}), "identifier": "foo[a,z]"},
]


@pytest.mark.parametrize("row", IDENTIFIER_CASES, ids=lambda r: r["id"])
def test_identifier_round_trip(row: dict[str, Any]) -> None:
    identifier = identifier_for(row["name"], row["extras"])
    assert identifier == row["identifier"]
    assert split_identifier(identifier) == (row["name"], row["extras"])


def test_split_identifier_ignores_empty_brackets() -> None:
    assert split_identifier("foo[]") == ("foo", frozenset())


def test_requirement_rendering_and_identity() -> None:
    req = ResolverRequirement(spec=RequirementSpec.parse("Foo[Fast]>=1.0"))
    assert req.name == "foo"
    assert req.extras == frozenset({"fast"})
    assert req.identifier == "foo[fast]"
    assert str(req) == "foo[fast]>=1.0"


def test_pinned_requirement_rendering() -> None:
    pin = fake_key("foo", "1.0")
    req = ResolverRequirement(spec=RequirementSpec.parse("foo==1.0"), pinned=pin)
    assert str(req) == "foo==1.0 (foo-1.0-py3-none-any.whl)"
    assert req.identifier == "foo"


@pytest.mark.parametrize("pinned", [False, True], ids=["unpinned", "pinned"])
def test_requirement_mapping_round_trip(pinned: bool) -> None:
    req = ResolverRequirement(
        spec=RequirementSpec.parse("foo[x]==1.0"),
        pinned=fake_key("foo", "1.0") if pinned else None,
    )
    assert ResolverRequirement.from_mapping(req.to_mapping()) == req


def test_candidate_rendering_and_round_trip() -> None:
    cand = ResolverCandidate(distribution=fake_key("foo", "2.0"), extras=frozenset({"x"}))
    assert cand.name == "foo"
    assert cand.version == "2.0"
    assert cand.identifier == "foo[x]"
    assert str(cand) == "foo[x]==2.0"
    assert ResolverCandidate.from_mapping(cand.to_mapping()) == cand


def test_reporter_counts_rounds_and_backtracks(caplog: pytest.LogCaptureFixture) -> None:
    reporter = LockResolutionReporter()
    with caplog.at_level(logging.DEBUG):
        reporter.starting()
        reporter.starting_round(0)
        reporter.starting_round(1)
        reporter.resolving_conflicts([])
        reporter.ending(None)
    assert reporter.rounds == 2
    assert reporter.backtracks == 1
    assert "after 2 round(s), 1 backtrack(s)" in caplog.text


def test_reporter_cancels_between_rounds() -> None:
    calls = iter([False, False, True])
    reporter = LockResolutionReporter(should_cancel=lambda: next(calls))
    reporter.starting_round(0)
    reporter.starting_round(1)
    with pytest.raises(ResolutionCancelled, match="round 2"):
        reporter.starting_round(2)
