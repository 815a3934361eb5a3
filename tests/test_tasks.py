"""
Tests for the task store: validation, permissions, filtering and satellites.
"""
from datetime import datetime, timedelta, timezone

import pytest

from pkg.workflow import Conflict, Forbidden, InvalidArgument, NotFound

OWNER, MANAGER, MEMBER, OUTSIDER = "alice", "bob", "carol", "mallory"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Create / update
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_create_task_fields(workflow, project):
    milestone = workflow.add_milestone(project, OWNER, "Beta", due_date="2026-12-01")
    task_id = workflow.create_task(project, MEMBER, {
        "title": "  Landing page  ",
        "description": "Hero + pricing",
        "priority": "HIGH",
        "assignee_id": MANAGER,
        "milestone_id": milestone,
        "due_date": "2026-11-30",
        "estimated_hours": "4.5",
        "tags": "web, marketing",
    })

    task = workflow.get_task(task_id, MEMBER)
    assert task["title"] == "Landing page"
    assert task["priority"] == "high"
    assert task["status"] == "to_do"
    assert task["creator_id"] == MEMBER
    assert task["assignee_id"] == MANAGER
    assert task["milestone_id"] == milestone
    assert task["due_date"] == "2026-11-30"
    assert task["estimated_hours"] == 4.5
    assert task["tags"] == ["web", "marketing"]
    assert task["created_at"] == task["updated_at"]


def test_create_task_requires_title(workflow, project):
    with pytest.raises(InvalidArgument):
        workflow.create_task(project, MEMBER, {"title": ""})
    with pytest.raises(InvalidArgument):
        workflow.create_task(project, MEMBER, {"description": "no title"})


@pytest.mark.parametrize("fields", [
    {"status": "blocked"},
    {"priority": "critical"},
    {"due_date": "next week"},
    {"estimated_hours": -2},
    {"tags": 42},
])
def test_create_task_rejects_bad_fields(workflow, project, fields):
    with pytest.raises(InvalidArgument):
        workflow.create_task(project, MEMBER, dict(fields, title="Bad"))


def test_create_task_membership_checks(workflow, project):
    """Outsider creator, outsider assignee and foreign milestone all look absent"""
    with pytest.raises(NotFound):
        workflow.create_task(project, OUTSIDER, {"title": "Sneaky"})
    with pytest.raises(NotFound, match="Assignee"):
        workflow.create_task(project, MEMBER, {"title": "A", "assignee_id": OUTSIDER})

    other = workflow.create_project(OWNER, "Other")
    foreign_milestone = workflow.add_milestone(other, OWNER, "Elsewhere")
    with pytest.raises(NotFound, match="Milestone"):
        workflow.create_task(project, MEMBER, {"title": "A", "milestone_id": foreign_milestone})

    assert workflow.get_task_status_counts(project, OWNER)["total"] == 0


def test_create_task_missing_project(workflow):
    with pytest.raises(NotFound):
        workflow.create_task(4242, OWNER, {"title": "Nowhere"})


def test_update_task_partial_merge(workflow, project):
    task_id = workflow.create_task(project, MEMBER, {
        "title": "Original", "description": "Keep me", "priority": "low", "tags": ["a"],
    })

    updated = workflow.update_task(task_id, MEMBER, {"priority": "urgent", "tags": ["a", "b"]})

    assert updated["title"] == "Original"
    assert updated["description"] == "Keep me"
    assert updated["priority"] == "urgent"
    assert updated["tags"] == ["a", "b"]


def test_update_task_clears_assignee(workflow, project):
    task_id = workflow.create_task(project, MEMBER, {"title": "A", "assignee_id": MEMBER})
    updated = workflow.update_task(task_id, MEMBER, {"assignee_id": None})
    assert updated["assignee_id"] is None


def test_update_task_rejects_empty_title(workflow, project):
    task_id = workflow.create_task(project, MEMBER, {"title": "A"})
    with pytest.raises(InvalidArgument):
        workflow.update_task(task_id, MEMBER, {"title": "   "})
    assert workflow.get_task(task_id, MEMBER)["title"] == "A"


def test_update_task_checks_membership(workflow, project):
    task_id = workflow.create_task(project, MEMBER, {"title": "A"})
    with pytest.raises(NotFound):
        workflow.update_task(task_id, OUTSIDER, {"title": "Mine now"})
    with pytest.raises(NotFound):
        workflow.update_task(task_id, MEMBER, {"assignee_id": OUTSIDER})
    with pytest.raises(NotFound):
        workflow.update_task(9999, MEMBER, {"title": "Ghost"})


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Delete
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_delete_task_permissions(workflow, project):
    """Creator, assignee, owner and managers may delete; other members may not"""
    workflow.add_member(project, OWNER, "dave", "member")

    by_member = workflow.create_task(project, MEMBER, {"title": "Carol's"})
    with pytest.raises(Forbidden):
        workflow.delete_task(by_member, "dave")
    with pytest.raises(NotFound):
        workflow.delete_task(by_member, OUTSIDER)
    workflow.delete_task(by_member, MEMBER)

    assigned = workflow.create_task(project, OWNER, {"title": "For dave", "assignee_id": "dave"})
    workflow.delete_task(assigned, "dave")

    managed = workflow.create_task(project, MEMBER, {"title": "Managed"})
    workflow.delete_task(managed, MANAGER)

    owned = workflow.create_task(project, MEMBER, {"title": "Owned"})
    workflow.delete_task(owned, OWNER)

    assert workflow.get_task_status_counts(project, OWNER)["total"] == 0


def test_delete_task_compacts_column(workflow, project, board, task_ids, assert_dense):
    a = workflow.create_task(project, MEMBER, {"title": "A"})
    b = workflow.create_task(project, MEMBER, {"title": "B"})
    c = workflow.create_task(project, MEMBER, {"title": "C"})

    workflow.delete_task(b, MEMBER)

    assert task_ids(board, "To Do") == [a, c]
    assert_dense()


def test_delete_task_cascades_satellites(workflow, project, board):
    task_id = workflow.create_task(project, MEMBER, {"title": "A"})
    workflow.add_subtask(task_id, MEMBER, "Step 1")
    workflow.add_comment(task_id, MEMBER, "Started")
    workflow.start_time_tracking(task_id, MEMBER)

    workflow.delete_task(task_id, MEMBER)

    for table in ("subtasks", "task_comments", "time_entries", "kanban_tasks"):
        assert workflow.gateway.execute(f"SELECT COUNT(*) AS n FROM {table}")[0]["n"] == 0
    with pytest.raises(NotFound):
        workflow.get_task(task_id, MEMBER)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Listing and filters
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _titles(tasks):
    return [t["title"] for t in tasks]


def test_default_order(workflow, project):
    """Due date first (undated last), then priority, then title"""
    workflow.create_task(project, MEMBER, {"title": "Undated", "priority": "urgent"})
    workflow.create_task(project, MEMBER, {"title": "Late low", "due_date": "2026-03-02", "priority": "low"})
    workflow.create_task(project, MEMBER, {"title": "Late high", "due_date": "2026-03-02", "priority": "high"})
    workflow.create_task(project, MEMBER, {"title": "Early", "due_date": "2026-03-01"})

    tasks = workflow.get_project_tasks(project, MEMBER)
    assert _titles(tasks) == ["Early", "Late high", "Late low", "Undated"]


def test_sort_parameter(workflow, project):
    for title in ("Bravo", "Alpha", "Charlie"):
        workflow.create_task(project, MEMBER, {"title": title})

    assert _titles(workflow.get_project_tasks(project, MEMBER, {"sort": "title_asc"})) == ["Alpha", "Bravo", "Charlie"]
    assert _titles(workflow.get_project_tasks(project, MEMBER, {"sort": "title_desc"})) == ["Charlie", "Bravo", "Alpha"]


def test_filter_by_status_priority_search(workflow, project):
    workflow.create_task(project, MEMBER, {"title": "Write copy", "status": "in_progress", "priority": "high"})
    workflow.create_task(project, MEMBER, {"title": "Review copy", "status": "in_review"})
    workflow.create_task(project, MEMBER, {"title": "Ship", "description": "copy is final", "priority": "high"})

    assert _titles(workflow.get_project_tasks(project, MEMBER, {"status": "in_review"})) == ["Review copy"]
    assert sorted(_titles(workflow.get_project_tasks(project, MEMBER, {"priority": "high"}))) == ["Ship", "Write copy"]
    assert len(workflow.get_project_tasks(project, MEMBER, {"search": "copy"})) == 3


def test_filter_assignee_and_milestone(workflow, project):
    milestone = workflow.add_milestone(project, MANAGER, "MVP")
    workflow.create_task(project, MEMBER, {"title": "Mine", "assignee_id": MEMBER, "milestone_id": milestone})
    workflow.create_task(project, MEMBER, {"title": "Nobody's"})

    assert _titles(workflow.get_project_tasks(project, MEMBER, {"assignee_id": MEMBER})) == ["Mine"]
    assert _titles(workflow.get_project_tasks(project, MEMBER, {"assignee_id": "unassigned"})) == ["Nobody's"]
    tasks = workflow.get_project_tasks(project, MEMBER, {"milestone_id": milestone})
    assert _titles(tasks) == ["Mine"]
    assert tasks[0]["milestone_title"] == "MVP"
    assert _titles(workflow.get_project_tasks(project, MEMBER, {"milestone_id": "without_milestone"})) == ["Nobody's"]


def test_filter_due_date_buckets(workflow, project):
    today = datetime.now(timezone.utc).date()
    workflow.create_task(project, MEMBER, {"title": "Overdue", "due_date": today - timedelta(days=2)})
    workflow.create_task(project, MEMBER, {"title": "Finished late", "due_date": today - timedelta(days=2),
                                           "status": "done"})
    workflow.create_task(project, MEMBER, {"title": "Today", "due_date": today})
    workflow.create_task(project, MEMBER, {"title": "Soon", "due_date": today + timedelta(days=3)})
    workflow.create_task(project, MEMBER, {"title": "Later", "due_date": today + timedelta(days=30)})
    workflow.create_task(project, MEMBER, {"title": "Someday"})

    def bucket(name):
        return _titles(workflow.get_project_tasks(project, MEMBER, {"due_date": name}))

    assert bucket("overdue") == ["Overdue"]
    assert bucket("today") == ["Today"]
    assert bucket("upcoming") == ["Soon"]
    assert bucket("future") == ["Later"]
    assert bucket("no_date") == ["Someday"]
    with pytest.raises(InvalidArgument):
        bucket("yesterday")


def test_due_date_buckets_use_utc_day(workflow, project, monkeypatch):
    """The "today" bucket follows the UTC calendar day, like the stored timestamps"""
    class LateEvening(datetime):
        @classmethod
        def now(cls, tz=None):
            return datetime(2026, 3, 10, 23, 30, tzinfo=timezone.utc).astimezone(tz)

    monkeypatch.setattr("pkg.workflow.tasks.datetime", LateEvening)
    workflow.create_task(project, MEMBER, {"title": "Yesterday", "due_date": "2026-03-09"})
    workflow.create_task(project, MEMBER, {"title": "Tonight", "due_date": "2026-03-10"})
    workflow.create_task(project, MEMBER, {"title": "Tomorrow", "due_date": "2026-03-11"})

    def bucket(name):
        return _titles(workflow.get_project_tasks(project, MEMBER, {"due_date": name}))

    assert bucket("overdue") == ["Yesterday"]
    assert bucket("today") == ["Tonight"]
    assert bucket("upcoming") == ["Tomorrow"]


def test_filter_by_tag(workflow, project):
    workflow.create_task(project, MEMBER, {"title": "Tagged", "tags": ["legal", "urgent"]})
    workflow.create_task(project, MEMBER, {"title": "Near miss", "tags": ["legalese"]})

    assert _titles(workflow.get_project_tasks(project, MEMBER, {"tag": "legal"})) == ["Tagged"]


def test_pagination(workflow, project):
    for i in range(5):
        workflow.create_task(project, MEMBER, {"title": f"T{i}"})
    page = workflow.get_project_tasks(project, MEMBER, {"sort": "title_asc", "limit": 2, "offset": 2})
    assert _titles(page) == ["T2", "T3"]


def test_listing_includes_subtask_counts(workflow, project):
    task_id = workflow.create_task(project, MEMBER, {"title": "Parent"})
    first = workflow.add_subtask(task_id, MEMBER, "One")
    workflow.add_subtask(task_id, MEMBER, "Two")
    workflow.update_subtask(first, MEMBER, {"is_completed": True})

    [task] = workflow.get_project_tasks(project, MEMBER)
    assert task["subtask_count"] == {"total": 2, "completed": 1}


def test_listing_hidden_from_outsider(workflow, project):
    with pytest.raises(NotFound):
        workflow.get_project_tasks(project, OUTSIDER)


def test_status_counts(workflow, project):
    workflow.create_task(project, MEMBER, {"title": "A"})
    workflow.create_task(project, MEMBER, {"title": "B", "status": "done"})
    workflow.create_task(project, MEMBER, {"title": "C", "status": "done"})

    counts = workflow.get_task_status_counts(project, MEMBER)
    assert counts["to_do"] == 1
    assert counts["done"] == 2
    assert counts["backlog"] == 0
    assert counts["total"] == 3


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Subtasks, comments, time tracking
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_subtasks(workflow, project):
    task_id = workflow.create_task(project, MEMBER, {"title": "Parent"})
    with pytest.raises(InvalidArgument):
        workflow.add_subtask(task_id, MEMBER, "")
    with pytest.raises(NotFound):
        workflow.add_subtask(task_id, OUTSIDER, "Sneaky")

    subtask_id = workflow.add_subtask(task_id, MEMBER, "Draft", "first pass")
    workflow.update_subtask(subtask_id, MANAGER, {"title": "Draft v2", "is_completed": True})

    [subtask] = workflow.get_task_details(task_id, MEMBER)["subtasks"]
    assert subtask["title"] == "Draft v2"
    assert subtask["description"] == "first pass"
    assert subtask["is_completed"] == 1

    workflow.delete_subtask(subtask_id, MEMBER)
    assert workflow.get_task_details(task_id, MEMBER)["subtasks"] == []
    with pytest.raises(NotFound):
        workflow.delete_subtask(subtask_id, MEMBER)


def test_comments(workflow, project):
    task_id = workflow.create_task(project, MEMBER, {"title": "Discuss"})
    with pytest.raises(InvalidArgument):
        workflow.add_comment(task_id, MEMBER, "  ")

    mine = workflow.add_comment(task_id, MEMBER, "Looks good")
    theirs = workflow.add_comment(task_id, OWNER, "Ship it")
    assert mine["user_id"] == MEMBER

    with pytest.raises(Forbidden):
        workflow.delete_comment(theirs["id"], MEMBER)
    workflow.delete_comment(mine["id"], MEMBER)
    workflow.delete_comment(theirs["id"], MANAGER)

    assert workflow.get_task_details(task_id, MEMBER)["comments"] == []


def test_time_tracking(workflow, project):
    task_id = workflow.create_task(project, MEMBER, {"title": "Build"})
    entry = workflow.start_time_tracking(task_id, MEMBER, "coding")
    assert entry["end_time"] is None
    assert entry["is_billable"] is True

    with pytest.raises(Conflict):
        workflow.start_time_tracking(task_id, MEMBER)
    # Another user may track the same task
    other = workflow.start_time_tracking(task_id, OWNER, is_billable=False)

    with pytest.raises(Forbidden):
        workflow.stop_time_tracking(entry["id"], OWNER)
    stopped = workflow.stop_time_tracking(entry["id"], MEMBER)
    assert stopped["end_time"] is not None
    assert stopped["duration"] >= 0
    with pytest.raises(Conflict):
        workflow.stop_time_tracking(entry["id"], MEMBER)
    with pytest.raises(NotFound):
        workflow.stop_time_tracking(9999, MEMBER)

    details = workflow.get_task_details(task_id, MEMBER)
    assert {e["id"] for e in details["time_entries"]} == {entry["id"], other["id"]}
    assert details["total_time_spent"] == stopped["duration"]

    # Stopped entries free the slot for a new one
    workflow.start_time_tracking(task_id, MEMBER)


def test_remove_member_unassigns_tasks(workflow, project):
    task_id = workflow.create_task(project, OWNER, {"title": "A", "assignee_id": MEMBER})
    with pytest.raises(Forbidden):
        workflow.remove_member(project, MEMBER, MANAGER)
    with pytest.raises(Forbidden):
        workflow.remove_member(project, MANAGER, OWNER)

    workflow.remove_member(project, MANAGER, MEMBER)

    assert workflow.get_task(task_id, OWNER)["assignee_id"] is None
    assert [m["user_id"] for m in workflow.list_members(project, OWNER)] == [OWNER, MANAGER]
