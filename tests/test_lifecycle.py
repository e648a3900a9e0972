"""Tests for the pure lifecycle state machine."""

from datetime import datetime, timedelta

import pytest

from domain.enums import DomainStatus
from domain.lifecycle import (
    HOLD_STATES,
    PHASE_ORDER,
    compute_phase_deadline,
    compute_transition,
    is_valid_transition,
    milestone_schedule,
    next_phase,
)

T = datetime(2025, 1, 1, 0, 0, 0)


class TestPhaseGraph:
    def test_next_phase_follows_expiry_path(self) -> None:
        path = [DomainStatus.ACTIVE]
        while next_phase(path[-1]) is not None:
            path.append(next_phase(path[-1]))
        assert path == PHASE_ORDER

    def test_released_is_terminal(self) -> None:
        assert next_phase(DomainStatus.RELEASED) is None
        for status in DomainStatus:
            assert not is_valid_transition(DomainStatus.RELEASED, status)

    @pytest.mark.parametrize("current, new", list(zip(PHASE_ORDER, PHASE_ORDER[1:])))
    def test_one_step_forward_is_valid(self, current: str, new: str) -> None:
        assert is_valid_transition(current, new)

    def test_skipping_or_going_back_is_invalid(self) -> None:
        assert not is_valid_transition(DomainStatus.ACTIVE, DomainStatus.REDEMPTION)
        assert not is_valid_transition(DomainStatus.GRACE, DomainStatus.ACTIVE)
        assert not is_valid_transition(DomainStatus.AUCTION, DomainStatus.RELEASED)

    def test_graph_has_no_cycles_outside_holds(self) -> None:
        live = [s for s in DomainStatus if s not in HOLD_STATES]
        for a in live:
            for b in live:
                if is_valid_transition(a, b):
                    assert not is_valid_transition(b, a), f"cycle between {a} and {b}"

    def test_holds_reachable_from_live_states(self) -> None:
        for hold in HOLD_STATES:
            assert is_valid_transition(DomainStatus.ACTIVE, hold)
            assert is_valid_transition(DomainStatus.REDEMPTION, hold)
            assert not is_valid_transition(DomainStatus.DISPUTE_HOLD, hold)

    def test_hold_clears_back_to_live_state_only(self) -> None:
        assert is_valid_transition(DomainStatus.FRAUD_HOLD, DomainStatus.ACTIVE)
        assert is_valid_transition(DomainStatus.FRAUD_HOLD, DomainStatus.GRACE)
        assert not is_valid_transition(DomainStatus.FRAUD_HOLD, DomainStatus.RELEASED)

    def test_activation_edges(self) -> None:
        assert is_valid_transition(DomainStatus.PENDING, DomainStatus.ACTIVE)
        assert is_valid_transition(DomainStatus.PENDING, DomainStatus.FAILED)
        assert is_valid_transition(DomainStatus.FAILED, DomainStatus.ACTIVE)
        assert not is_valid_transition(DomainStatus.FAILED, DomainStatus.PENDING)


class TestComputeTransition:
    def test_due_when_deadline_strictly_past(self) -> None:
        assert compute_transition(DomainStatus.ACTIVE, T, T + timedelta(seconds=1)) == DomainStatus.GRACE

    def test_not_due_at_exact_deadline(self) -> None:
        assert compute_transition(DomainStatus.ACTIVE, T, T) is None

    def test_no_deadline_never_due(self) -> None:
        assert compute_transition(DomainStatus.GRACE, None, T) is None

    def test_statuses_without_deadline_never_due(self) -> None:
        assert compute_transition(DomainStatus.PENDING, T, T + timedelta(days=1)) is None
        assert compute_transition(DomainStatus.DISPUTE_HOLD, T, T + timedelta(days=1)) is None


class TestPhaseDeadlines:
    def test_cumulative_offsets_from_expiry(self) -> None:
        deadline = T
        cumulative = {}
        for status in PHASE_ORDER[1:-1]:
            deadline = compute_phase_deadline(status, deadline, now=T + timedelta(days=500))
            cumulative[status] = (deadline - T).days
        assert cumulative == {
            DomainStatus.GRACE: 15,
            DomainStatus.REDEMPTION: 45,
            DomainStatus.REGISTRY_HOLD: 60,
            DomainStatus.AUCTION: 75,
            DomainStatus.PENDING_DELETE: 80,
        }

    def test_anchor_falls_back_to_now(self) -> None:
        assert compute_phase_deadline(DomainStatus.GRACE, None, T) == T + timedelta(days=15)

    def test_released_has_no_deadline(self) -> None:
        assert compute_phase_deadline(DomainStatus.RELEASED, T, T) is None


class TestMilestones:
    def test_schedule_offsets(self) -> None:
        schedule = dict(milestone_schedule(T))
        assert schedule["D-14"] == T - timedelta(days=14)
        assert schedule["D-1"] == T - timedelta(days=1)
        assert schedule["D+16"] == T + timedelta(days=16)
        assert schedule["D+60"] == T + timedelta(days=60)
        assert len(schedule) == 10
