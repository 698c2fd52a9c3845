"""Tests for collaboration sessions and work partitioning."""

import math

import pytest

from taskhive.collab import (
    CollaborationEngine,
    SessionStatus,
    new_session_id,
    slot_partitioner,
    spatial_x_partitioner,
)
from taskhive.collab.engine import Participant
from taskhive.errors import ParticipantNotFound, SessionNotFound
from taskhive.events import EventBus, EventRecorder


class FakeBroadcaster:
    def __init__(self) -> None:
        self.sent = []

    def broadcast_cluster_event(self, event_type, payload):
        self.sent.append((event_type, payload))
        return 1


def area(x1, x2, y=64, z1=0, z2=4):
    return {"start": {"x": x1, "y": y, "z": z1}, "end": {"x": x2, "y": y, "z": z2}}


def builders(*names):
    return [{"agent_id": name, "role": "builder"} for name in names]


def spans(assignments):
    return [
        (record["area"]["start"]["x"], record["area"]["end"]["x"])
        for record in assignments.values()
        if record["area"] is not None
    ]


@pytest.fixture
def broadcaster():
    return FakeBroadcaster()


@pytest.fixture
def engine(broadcaster):
    return CollaborationEngine(broadcaster=broadcaster, bus=EventBus())


# ═══════════════════════════════════════════════════════════════════════════
# PARTITIONERS
# ═══════════════════════════════════════════════════════════════════════════


class TestPartitioners:
    def test_even_split_along_x(self, engine):
        """Test slicing nine columns across three builders."""
        engine.create_session(
            participants=builders("a", "b", "c"),
            metadata={"workArea": area(0, 8)},
            session_id="s1",
        )
        result = engine.allocate_work("s1")

        assert spans(result["assignments"]) == [(0, 2), (3, 5), (6, 8)]
        assert [r["index"] for r in result["assignments"].values()] == [0, 1, 2]
        assert result["assignments"]["b"]["area"]["start"] == {"x": 3, "y": 64, "z": 0}
        assert result["assignments"]["b"]["area"]["end"] == {"x": 5, "y": 64, "z": 4}

    def test_remainder_goes_to_leading_participants(self):
        """Leftover columns widen the first slices by one."""
        people = [Participant(agent_id=n) for n in ("a", "b", "c")]
        result = spatial_x_partitioner(people, {"area": area(0, 9)})
        assert spans(result) == [(0, 3), (4, 6), (7, 9)]

    @pytest.mark.parametrize("count", [2, 3, 4, 5, 7, 9])
    def test_slices_tile_the_area(self, count):
        """Every slice lies inside the area and the union is exactly the area."""
        people = [Participant(agent_id=str(i)) for i in range(count)]
        result = spatial_x_partitioner(people, {"workArea": area(0, 8)})

        columns = []
        for lo, hi in spans(result):
            assert 0 <= lo <= hi <= 8
            columns.extend(range(lo, hi + 1))
        assert columns == list(range(9))

    def test_four_participants_on_nine_columns(self):
        """Nine columns split 3/2/2/2 with nothing past the far edge."""
        people = [Participant(agent_id=str(i)) for i in range(4)]
        result = spatial_x_partitioner(people, {"workArea": area(0, 8)})
        assert spans(result) == [(0, 2), (3, 4), (5, 6), (7, 8)]

    def test_descending_area(self):
        """A reversed area is sliced from its start towards its end."""
        people = [Participant(agent_id=n) for n in ("a", "b")]
        result = spatial_x_partitioner(people, {"workArea": area(5, 0)})
        assert (result["a"]["area"]["start"]["x"], result["a"]["area"]["end"]["x"]) == (5, 3)
        assert (result["b"]["area"]["start"]["x"], result["b"]["area"]["end"]["x"]) == (2, 0)

    def test_more_participants_than_columns(self):
        """Participants beyond the area width get no area."""
        people = [Participant(agent_id=str(i)) for i in range(4)]
        result = spatial_x_partitioner(people, {"workArea": area(0, 1)})
        assert spans(result) == [(0, 0), (1, 1)]
        assert result["2"] == {"area": None, "index": 2}
        assert result["3"] == {"area": None, "index": 3}

    def test_non_finite_area_falls_back_to_slots(self):
        """An area with an infinite edge is treated as missing."""
        people = [Participant(agent_id="a")]
        result = spatial_x_partitioner(people, {"workArea": area(0, math.inf)})
        assert result == {"a": {"slot": 0}}

    @pytest.mark.parametrize("edge", [10**400, "east", None])
    def test_unusable_edge_falls_back_to_slots(self, edge):
        """An edge that is not a usable number is treated as missing."""
        people = [Participant(agent_id="a"), Participant(agent_id="b")]
        result = spatial_x_partitioner(people, {"workArea": area(0, edge)})
        assert result == {"a": {"slot": 0}, "b": {"slot": 1}}

    def test_falls_back_to_slots_without_area(self):
        """Without a usable area every participant gets a slot."""
        people = [Participant(agent_id=n) for n in ("a", "b")]
        assert spatial_x_partitioner(people, {}) == {"a": {"slot": 0}, "b": {"slot": 1}}
        assert spatial_x_partitioner(people, {"workArea": {"start": {"x": 0}}}) == (
            slot_partitioner(people)
        )

    def test_no_participants(self):
        """Test partitioning an empty participant list."""
        assert spatial_x_partitioner([], {"workArea": area(0, 8)}) == {}


# ═══════════════════════════════════════════════════════════════════════════
# SESSIONS
# ═══════════════════════════════════════════════════════════════════════════


class TestSessions:
    def test_create_snapshot_and_broadcast(self, engine, broadcaster):
        """Test creating a session and broadcasting it."""
        recorder = EventRecorder(engine.bus)
        snapshot = engine.create_session(
            plan={"name": "wall"}, participants=builders("a", "b"), metadata={"k": 1}
        )

        assert snapshot["id"].startswith("collab_")
        assert snapshot["status"] == "active"
        assert [p["agent_id"] for p in snapshot["participants"]] == ["a", "b"]
        assert snapshot["plan"] == {"name": "wall"}
        assert recorder.names() == ["participant_added", "participant_added", "session_created"]
        assert broadcaster.sent[-1] == ("collab_session_created", {"session": snapshot})

    def test_snapshots_are_copies(self, engine):
        """Mutating a snapshot leaves the session alone."""
        snapshot = engine.create_session(metadata={"tags": ["x"]}, session_id="s1")
        snapshot["metadata"]["tags"].append("y")
        assert engine.get_session("s1")["metadata"] == {"tags": ["x"]}

    def test_duplicate_id(self, engine):
        """Test refusing a second session with the same id."""
        engine.create_session(session_id="s1")
        with pytest.raises(ValueError, match="already exists"):
            engine.create_session(session_id="s1")

    def test_unknown_session(self, engine):
        """Test operations on a session that does not exist."""
        assert engine.get_session("nope") is None
        assert engine.remove_participant("nope", "a") is False
        assert engine.complete_session("nope") is False
        with pytest.raises(SessionNotFound):
            engine.allocate_work("nope")
        with pytest.raises(SessionNotFound):
            engine.add_participant("nope", {"agent_id": "a"})

    def test_participant_needs_agent_id(self, engine):
        """Test rejecting a participant with no agent_id."""
        engine.create_session(session_id="s1")
        with pytest.raises(ValueError, match="agent_id"):
            engine.add_participant("s1", {"role": "builder"})

    def test_re_adding_replaces_and_clears_assignment(self, engine):
        """Re-adding a participant replaces it and clears its assignment."""
        engine.create_session(participants=builders("a"), session_id="s1")
        engine.allocate_work("s1")
        snapshot = engine.add_participant("s1", {"agent_id": "a", "role": "miner"})

        assert len(snapshot["participants"]) == 1
        assert snapshot["participants"][0]["role"] == "miner"
        assert snapshot["assignments"] == {}

    def test_remove_participant(self, engine, broadcaster):
        """Test removing a participant and its assignment."""
        engine.create_session(participants=builders("a", "b"), session_id="s1")
        engine.allocate_work("s1", partitioner=slot_partitioner)

        assert engine.remove_participant("s1", "a") is True
        assert engine.remove_participant("s1", "a") is False
        snapshot = engine.get_session("s1")
        assert [p["agent_id"] for p in snapshot["participants"]] == ["b"]
        assert snapshot["assignments"] == {"b": {"slot": 1}}
        assert broadcaster.sent[-1] == (
            "collab_participant_removed",
            {"session_id": "s1", "agent_id": "a"},
        )

    def test_allocation_replaces_assignments(self, engine):
        """Test that a new allocation replaces the previous one."""
        engine.create_session(participants=builders("a", "b"), session_id="s1")
        engine.allocate_work("s1", partitioner=slot_partitioner)
        engine.remove_participant("s1", "a")
        result = engine.allocate_work("s1")

        assert result["assignments"] == {"b": {"slot": 0}}
        snapshot = engine.get_session("s1")
        assert snapshot["participants"][0]["assignment"] == {"slot": 0}

    def test_session_partitioner_is_used(self, engine):
        """A partitioner given at creation is used by allocate_work."""
        def everyone_everywhere(participants, metadata, session):
            return {p.agent_id: {"all": True} for p in participants}

        engine.create_session(
            participants=builders("a"), session_id="s1", partitioner=everyone_everywhere
        )
        assert engine.allocate_work("s1")["assignments"] == {"a": {"all": True}}

    def test_complete_session(self, engine, broadcaster):
        """Test completing a session and merging final metadata."""
        engine.create_session(session_id="s1", metadata={"a": 1})
        assert engine.complete_session("s1", {"result": "done"}) is True

        snapshot = engine.get_session("s1")
        assert snapshot["status"] == SessionStatus.COMPLETED
        assert snapshot["completed_at"] is not None
        assert snapshot["metadata"] == {"a": 1, "result": "done"}
        assert broadcaster.sent[-1][0] == "collab_session_completed"

    def test_new_session_ids_are_unique(self):
        """Generated session ids do not repeat."""
        ids = {new_session_id() for _ in range(50)}
        assert len(ids) == 50

    def test_works_without_broadcaster(self):
        """Test an engine with no broadcaster attached."""
        engine = CollaborationEngine()
        engine.create_session(participants=builders("a"), session_id="s1")
        assert engine.allocate_work("s1")["assignments"] == {"a": {"slot": 0}}


class TestProgress:
    @pytest.mark.parametrize(
        "value, expected",
        [(50, 50.0), (150, 100.0), (-5, 0.0), ("40", 40.0), ("lots", 0.0), (math.nan, 0.0)],
    )
    def test_clamped(self, engine, value, expected):
        """Test that progress is coerced and clamped to 0..100."""
        engine.create_session(participants=builders("a"), session_id="s1")
        assert engine.update_progress("s1", "a", value)["progress"] == expected

    def test_metadata_merges_and_broadcasts(self, engine, broadcaster):
        """Test merging progress metadata across updates."""
        engine.create_session(participants=builders("a"), session_id="s1")
        engine.update_progress("s1", "a", 10, {"placed": 4})
        payload = engine.update_progress("s1", "a", 20, {"stage": "walls"})

        assert payload == {
            "session_id": "s1",
            "agent_id": "a",
            "progress": 20.0,
            "metadata": {"placed": 4, "stage": "walls"},
        }
        assert broadcaster.sent[-1] == ("collab_progress_updated", payload)

    def test_unknown_participant(self, engine):
        """Progress for a non-participant raises."""
        engine.create_session(session_id="s1")
        with pytest.raises(ParticipantNotFound):
            engine.update_progress("s1", "ghost", 10)

    def test_aggregate(self, engine):
        """Test averaging progress over participants."""
        engine.create_session(participants=builders("a", "b"), session_id="s1")
        assert engine.aggregate_progress("s1") == 0.0
        engine.update_progress("s1", "a", 100)
        engine.update_progress("s1", "b", 50)
        assert engine.aggregate_progress("s1") == 75.0
