"""Tests for parent/child inference and project grouping."""

from datetime import timedelta

from agent_monitor.relationships import (
    build_session_tree,
    detect_parent_child,
    group_sessions_by_project,
    project_name,
)

from helpers import BASE, make_session


def _parent():
    # Spawn call at BASE (the newest of its two tools).
    return make_session("parent", tools=["Read", "Task"], last_event_at=BASE)


class TestDetectParentChild:
    def test_child_started_near_spawn_call(self):
        # Estimated start: last_event_at - 3 tools * 2s = BASE + 3s
        child = make_session("child", tools=["Read", "Read", "Read"], last_event_at=BASE + timedelta(seconds=9))
        assert detect_parent_child([_parent(), child]) == {"child": "parent"}

    def test_outside_tolerance(self):
        child = make_session("child", tools=["Read"], last_event_at=BASE + timedelta(seconds=30))
        assert detect_parent_child([_parent(), child]) == {}

    def test_session_is_never_its_own_parent(self):
        lone = make_session("lone", tools=["Task"], last_event_at=BASE)
        assert detect_parent_child([lone]) == {}

    def test_no_spawn_calls(self):
        sessions = [make_session("a", tools=["Bash"]), make_session("b", tools=["Bash"])]
        assert detect_parent_child(sessions) == {}


class TestSessionTree:
    def test_children_follow_parent(self):
        parent = make_session("p")
        other = make_session("o")
        child = make_session("c")
        rows = build_session_tree([child, other, parent], {"c": "p"})
        assert [(s.id, depth) for s, depth in rows] == [("o", 0), ("p", 0), ("c", 1)]

    def test_orphan_child_is_top_level(self):
        child = make_session("c")
        assert [(s.id, d) for s, d in build_session_tree([child], {"c": "gone"})] == [("c", 0)]


class TestProjects:
    def test_project_name(self):
        assert project_name(make_session(cwd="/work/billing")) == "billing"
        assert project_name(make_session(cwd="/work/billing/")) == "billing"
        assert project_name(make_session(cwd="")) == "unknown"

    def test_grouping_keeps_order(self):
        sessions = [
            make_session("a", cwd="/x/api"),
            make_session("b", cwd="/y/web"),
            make_session("c", cwd="/z/api"),
        ]
        groups = group_sessions_by_project(sessions)
        assert {k: [s.id for s in v] for k, v in groups.items()} == {"api": ["a", "c"], "web": ["b"]}
