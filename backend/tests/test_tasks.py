# tests/test_tasks.py — Task router tests
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from models import TaskAssignment, TaskEditHistory, UserRole
from tests.conftest import get_auth_headers, make_org, make_user


async def _create(client: AsyncClient, user, **payload) -> dict:
    payload.setdefault("title", "Prepare report cards")
    resp = await client.post("/api/v1/tasks", json=payload, headers=get_auth_headers(user))
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.asyncio
class TestCreate:
    async def test_create_defaults(self, client: AsyncClient, test_user, test_org):
        task = await _create(client, test_user)
        assert task["status"] == "pending"
        assert task["priority"] == "medium"
        assert task["organisation_id"] == test_org.id
        assert task["created_by"] == test_user.id
        assert task["creator_name"] == test_user.display_name
        assert task["version"] == 1
        assert task["completed_at"] is None
        assert task["assigned_users"] == []

    async def test_priority_alias(self, client: AsyncClient, test_user):
        task = await _create(client, test_user, priority="Alta")
        assert task["priority"] == "urgent"

    async def test_due_date_round_trip(self, client: AsyncClient, test_user):
        task = await _create(client, test_user, due_date="2025-03-14 09:30:00")
        assert task["due_date"] == "2025-03-14T09:30:00-03:00"

        resp = await client.get(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(test_user))
        assert resp.json()["due_date"] == "2025-03-14T09:30:00-03:00"

    async def test_blank_title_rejected(self, client: AsyncClient, test_user):
        resp = await client.post("/api/v1/tasks", json={"title": "   "}, headers=get_auth_headers(test_user))
        assert resp.status_code == 400

    async def test_invalid_due_date_rejected(self, client: AsyncClient, test_user):
        resp = await client.post("/api/v1/tasks", json={"title": "T", "due_date": "someday"},
                                 headers=get_auth_headers(test_user))
        assert resp.status_code == 400

    async def test_initial_status_must_be_reachable(self, client: AsyncClient, test_user):
        resp = await client.post("/api/v1/tasks", json={"title": "T", "status": "completed"},
                                 headers=get_auth_headers(test_user))
        assert resp.status_code == 400
        task = await _create(client, test_user, status="em_andamento")
        assert task["status"] == "in_progress"

    async def test_assignees(self, client: AsyncClient, test_user, second_user):
        task = await _create(client, test_user, assigned_user_ids=[second_user.id, second_user.id])
        assert [u["id"] for u in task["assigned_users"]] == [second_user.id]

    async def test_foreign_assignee_rejected(self, client: AsyncClient, test_user, outsider):
        resp = await client.post("/api/v1/tasks", json={"title": "T", "assigned_user_ids": [outsider.id]},
                                 headers=get_auth_headers(test_user))
        assert resp.status_code == 400

    async def test_private_tasks_disabled(self, client: AsyncClient, db_session):
        org = await make_org(db_session, "Strict School", "STR001", allow_private_tasks=False)
        user = await make_user(db_session, org, UserRole.TEACHER, "strict@taskboard.dev")
        resp = await client.post("/api/v1/tasks", json={"title": "Secret", "is_private": True},
                                 headers=get_auth_headers(user))
        assert resp.status_code == 400

    async def test_create_records_history(self, client: AsyncClient, test_user):
        task = await _create(client, test_user, priority="low")
        resp = await client.get(f"/api/v1/tasks/{task['id']}/history", headers=get_auth_headers(test_user))
        assert resp.status_code == 200
        history = resp.json()
        assert len(history) == 1
        assert history[0]["action"] == "created"
        assert history[0]["changes"]["after"]["priority"] == "low"

    async def test_other_org_requires_super_tenant(self, client: AsyncClient, admin_user, other_org):
        resp = await client.post("/api/v1/tasks", json={"title": "T", "organisation_id": other_org.id},
                                 headers=get_auth_headers(admin_user))
        assert resp.status_code == 403


@pytest.mark.asyncio
class TestVisibility:
    async def test_private_task_scenario(self, client: AsyncClient, test_user, second_user, admin_user, outsider):
        task = await _create(client, test_user, title="Private note", is_private=True)

        for viewer, expected in ((test_user, True), (second_user, False), (admin_user, True), (outsider, False)):
            resp = await client.get("/api/v1/tasks", headers=get_auth_headers(viewer))
            assert resp.status_code == 200
            ids = [t["id"] for t in resp.json()]
            assert (task["id"] in ids) is expected

        resp = await client.get(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(second_user))
        assert resp.status_code == 404
        resp = await client.get(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(outsider))
        assert resp.status_code == 404

    async def test_assignee_sees_private_task(self, client: AsyncClient, test_user, second_user):
        task = await _create(client, test_user, is_private=True, assigned_user_ids=[second_user.id])
        resp = await client.get(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(second_user))
        assert resp.status_code == 200

    async def test_super_admin_lists_across_orgs(self, client: AsyncClient, super_admin, outsider, other_org):
        task = await _create(client, outsider, title="Remote task")
        resp = await client.get(f"/api/v1/tasks?organisation_id={other_org.id}",
                                headers=get_auth_headers(super_admin))
        assert resp.status_code == 200
        assert [t["id"] for t in resp.json()] == [task["id"]]

    async def test_organisation_filter_requires_super_tenant(self, client: AsyncClient, admin_user, other_org):
        resp = await client.get(f"/api/v1/tasks?organisation_id={other_org.id}",
                                headers=get_auth_headers(admin_user))
        assert resp.status_code == 403


@pytest.mark.asyncio
class TestList:
    async def test_filters(self, client: AsyncClient, test_user, second_user):
        a = await _create(client, test_user, title="Order textbooks", priority="urgent")
        b = await _create(client, test_user, title="Call parents", assigned_user_ids=[second_user.id])
        c = await _create(client, test_user, title="Grade exams", status="in_progress")
        headers = get_auth_headers(test_user)

        resp = await client.get("/api/v1/tasks?priority=alta", headers=headers)
        assert [t["id"] for t in resp.json()] == [a["id"]]

        resp = await client.get("/api/v1/tasks?status=in_progress", headers=headers)
        assert [t["id"] for t in resp.json()] == [c["id"]]

        resp = await client.get(f"/api/v1/tasks?assigned_to={second_user.id}", headers=headers)
        assert [t["id"] for t in resp.json()] == [b["id"]]

        resp = await client.get("/api/v1/tasks?search=textbook", headers=headers)
        assert [t["id"] for t in resp.json()] == [a["id"]]

    async def test_unknown_status_filter(self, client: AsyncClient, test_user):
        resp = await client.get("/api/v1/tasks?status=archived", headers=get_auth_headers(test_user))
        assert resp.status_code == 400

    async def test_due_window_and_ordering(self, client: AsyncClient, test_user):
        late = await _create(client, test_user, title="Late", due_date="2025-03-20")
        early = await _create(client, test_user, title="Early", due_date="2025-03-14 23:00")
        undated = await _create(client, test_user, title="Undated")
        headers = get_auth_headers(test_user)

        resp = await client.get("/api/v1/tasks", headers=headers)
        assert [t["id"] for t in resp.json()] == [early["id"], late["id"], undated["id"]]

        resp = await client.get("/api/v1/tasks?due_from=2025-03-14&due_to=2025-03-14", headers=headers)
        assert [t["id"] for t in resp.json()] == [early["id"]]

    async def test_limit_counts_visible_tasks_only(self, client: AsyncClient, test_user, admin_user):
        for n in range(3):
            await _create(client, admin_user, title=f"Private {n}", is_private=True, due_date="2025-03-10")
        public = await _create(client, admin_user, title="Public", due_date="2025-03-20")

        resp = await client.get("/api/v1/tasks?limit=3", headers=get_auth_headers(test_user))
        assert resp.status_code == 200
        assert [t["id"] for t in resp.json()] == [public["id"]]

    async def test_search_wildcards_are_literal(self, client: AsyncClient, test_user):
        discount = await _create(client, test_user, title="Apply 10% discount")
        await _create(client, test_user, title="Plain task")
        underscore = await _create(client, test_user, title="rename file_a")
        headers = get_auth_headers(test_user)

        resp = await client.get("/api/v1/tasks", params={"search": "%"}, headers=headers)
        assert [t["id"] for t in resp.json()] == [discount["id"]]

        resp = await client.get("/api/v1/tasks", params={"search": "_"}, headers=headers)
        assert [t["id"] for t in resp.json()] == [underscore["id"]]


@pytest.mark.asyncio
class TestUpdate:
    async def test_partial_update_and_history(self, client: AsyncClient, test_user):
        task = await _create(client, test_user, description="Keep me")
        headers = get_auth_headers(test_user)

        resp = await client.patch(f"/api/v1/tasks/{task['id']}", json={"title": "New title"}, headers=headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["title"] == "New title"
        assert data["description"] == "Keep me"
        assert data["version"] == 2

        history = (await client.get(f"/api/v1/tasks/{task['id']}/history", headers=headers)).json()
        assert [h["action"] for h in history] == ["updated", "created"]
        assert history[0]["changes"] == {
            "before": {"title": "Prepare report cards"},
            "after": {"title": "New title"},
        }

    async def test_noop_update_keeps_version(self, client: AsyncClient, test_user):
        task = await _create(client, test_user)
        resp = await client.put(f"/api/v1/tasks/{task['id']}", json={"title": task["title"]},
                                headers=get_auth_headers(test_user))
        assert resp.status_code == 200
        assert resp.json()["version"] == 1

    async def test_stale_version_conflict(self, client: AsyncClient, test_user):
        task = await _create(client, test_user)
        headers = get_auth_headers(test_user)
        first = await client.patch(f"/api/v1/tasks/{task['id']}",
                                   json={"title": "First", "expected_version": 1}, headers=headers)
        assert first.status_code == 200
        stale = await client.patch(f"/api/v1/tasks/{task['id']}",
                                   json={"title": "Second", "expected_version": 1}, headers=headers)
        assert stale.status_code == 409

        current = await client.get(f"/api/v1/tasks/{task['id']}", headers=headers)
        assert current.json()["title"] == "First"

    async def test_status_lifecycle(self, client: AsyncClient, test_user):
        task = await _create(client, test_user)
        headers = get_auth_headers(test_user)
        url = f"/api/v1/tasks/{task['id']}"

        resp = await client.patch(url, json={"status": "completed"}, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Cannot change status from pending to completed"

        await client.patch(url, json={"status": "in_progress"}, headers=headers)
        resp = await client.patch(url, json={"status": "concluída"}, headers=headers)
        assert resp.json()["status"] == "completed"
        assert resp.json()["completed_at"] is not None

        resp = await client.patch(url, json={"status": "pending"}, headers=headers)
        assert resp.json()["completed_at"] is None

        history = (await client.get(f"{url}/history", headers=headers)).json()
        assert [h["action"] for h in history].count("status_changed") == 3

    async def test_stranger_cannot_update(self, client: AsyncClient, test_user, second_user):
        task = await _create(client, test_user)
        resp = await client.patch(f"/api/v1/tasks/{task['id']}", json={"title": "Mine now"},
                                  headers=get_auth_headers(second_user))
        assert resp.status_code == 403

    async def test_assignee_can_update(self, client: AsyncClient, test_user, second_user):
        task = await _create(client, test_user, assigned_user_ids=[second_user.id])
        resp = await client.patch(f"/api/v1/tasks/{task['id']}", json={"status": "in_progress"},
                                  headers=get_auth_headers(second_user))
        assert resp.status_code == 200

    async def test_coordinator_can_update_any(self, client: AsyncClient, test_user, coordinator):
        task = await _create(client, test_user)
        resp = await client.patch(f"/api/v1/tasks/{task['id']}", json={"priority": "urgent"},
                                  headers=get_auth_headers(coordinator))
        assert resp.status_code == 200
        assert resp.json()["priority"] == "urgent"

    async def test_due_date_rules(self, client: AsyncClient, test_user, second_user, coordinator):
        task = await _create(client, test_user, assigned_user_ids=[second_user.id])
        url = f"/api/v1/tasks/{task['id']}"

        resp = await client.patch(url, json={"due_date": "2025-04-01"}, headers=get_auth_headers(second_user))
        assert resp.status_code == 403

        resp = await client.patch(url, json={"due_date": "2025-04-01"}, headers=get_auth_headers(test_user))
        assert resp.status_code == 200

        resp = await client.patch(url, json={"due_date": None}, headers=get_auth_headers(coordinator))
        assert resp.status_code == 200
        assert resp.json()["due_date"] is None

    async def test_org_can_lock_due_dates(self, client: AsyncClient, db_session):
        org = await make_org(db_session, "Locked School", "LCK001", can_edit_due_dates=False)
        teacher = await make_user(db_session, org, UserRole.TEACHER, "locked@taskboard.dev")
        task = await _create(client, teacher, due_date="2025-04-01")
        resp = await client.patch(f"/api/v1/tasks/{task['id']}", json={"due_date": "2025-04-02"},
                                  headers=get_auth_headers(teacher))
        assert resp.status_code == 403

    async def test_replace_assignees_through_update(self, client: AsyncClient, test_user, second_user, coordinator):
        task = await _create(client, test_user, assigned_user_ids=[second_user.id])
        resp = await client.patch(f"/api/v1/tasks/{task['id']}", json={"assigned_user_ids": [coordinator.id]},
                                  headers=get_auth_headers(test_user))
        assert resp.status_code == 200
        assert [u["id"] for u in resp.json()["assigned_users"]] == [coordinator.id]


@pytest.mark.asyncio
class TestAssignments:
    async def test_replace_all(self, client: AsyncClient, db_session, test_user, second_user, coordinator):
        task = await _create(client, test_user, assigned_user_ids=[second_user.id])
        url = f"/api/v1/tasks/{task['id']}/assignments"
        headers = get_auth_headers(test_user)

        resp = await client.put(url, json={"user_ids": [coordinator.id, test_user.id, coordinator.id]}, headers=headers)
        assert resp.status_code == 200
        assert {u["id"] for u in resp.json()["assigned_users"]} == {coordinator.id, test_user.id}

        rows = (await db_session.execute(
            select(TaskAssignment).where(TaskAssignment.task_id == task["id"])
        )).scalars().all()
        assert len(rows) == 2

        # Same set again changes nothing
        again = await client.put(url, json={"user_ids": [test_user.id, coordinator.id]}, headers=headers)
        assert again.json()["version"] == resp.json()["version"]

        history = (await client.get(f"/api/v1/tasks/{task['id']}/history", headers=headers)).json()
        assert [h["action"] for h in history] == ["assigned", "created"]


@pytest.mark.asyncio
class TestDelete:
    async def test_creator_deletes(self, client: AsyncClient, db_session, test_user, second_user):
        task = await _create(client, test_user, assigned_user_ids=[second_user.id])
        headers = get_auth_headers(test_user)

        resp = await client.delete(f"/api/v1/tasks/{task['id']}", headers=headers)
        assert resp.status_code == 200
        assert (await client.get(f"/api/v1/tasks/{task['id']}", headers=headers)).status_code == 404

        for model in (TaskAssignment, TaskEditHistory):
            rows = (await db_session.execute(select(model).where(model.task_id == task["id"]))).scalars().all()
            assert rows == []

    async def test_assignee_cannot_delete(self, client: AsyncClient, test_user, second_user):
        task = await _create(client, test_user, assigned_user_ids=[second_user.id])
        resp = await client.delete(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(second_user))
        assert resp.status_code == 403

    async def test_coordinator_cannot_delete(self, client: AsyncClient, test_user, coordinator):
        task = await _create(client, test_user)
        resp = await client.delete(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(coordinator))
        assert resp.status_code == 403

    async def test_admin_deletes_any(self, client: AsyncClient, test_user, admin_user):
        task = await _create(client, test_user)
        resp = await client.delete(f"/api/v1/tasks/{task['id']}", headers=get_auth_headers(admin_user))
        assert resp.status_code == 200

    async def test_missing_task(self, client: AsyncClient, test_user):
        resp = await client.delete("/api/v1/tasks/does-not-exist", headers=get_auth_headers(test_user))
        assert resp.status_code == 404
