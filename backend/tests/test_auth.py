# tests/test_auth.py — Authentication & session tests
import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthService, MAX_LOGIN_ATTEMPTS
from models import AuditLog, AuditEventType, OrgType, PasswordReset, UserRole
from tests.conftest import DEFAULT_PASSWORD, get_auth_headers, make_org, make_user


@pytest.mark.asyncio
class TestLogin:
    async def test_login_success(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "teacher@taskboard.dev",
            "password": DEFAULT_PASSWORD,
        })
        assert res.status_code == 200
        data = res.json()
        assert data["token_type"] == "bearer"
        assert data["user"]["role"] == "teacher"
        assert data["user"]["permissions"]["tasks"]["create"] is True

    async def test_login_email_is_case_insensitive(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/login", json={
            "email": "  Teacher@TaskBoard.dev ",
            "password": DEFAULT_PASSWORD,
        })
        assert res.status_code == 200

    async def test_failures_are_indistinguishable(self, client: AsyncClient, test_user):
        wrong_password = await client.post("/api/v1/auth/login", json={
            "email": "teacher@taskboard.dev", "password": "nope-nope",
        })
        unknown_email = await client.post("/api/v1/auth/login", json={
            "email": "nobody@taskboard.dev", "password": "nope-nope",
        })
        malformed = await client.post("/api/v1/auth/login", json={
            "email": "not-an-email", "password": "nope-nope",
        })
        assert wrong_password.status_code == unknown_email.status_code == malformed.status_code == 401
        assert wrong_password.content == unknown_email.content == malformed.content

    async def test_inactive_user_rejected(self, client: AsyncClient, db_session, test_org):
        await make_user(db_session, test_org, UserRole.TEACHER, "gone@taskboard.dev", is_active=False)
        res = await client.post("/api/v1/auth/login", json={
            "email": "gone@taskboard.dev", "password": DEFAULT_PASSWORD,
        })
        assert res.status_code == 401

    async def test_inactive_organisation_rejected(self, client: AsyncClient, db_session, test_user, test_org):
        test_org.is_active = False
        await db_session.commit()
        res = await client.post("/api/v1/auth/login", json={
            "email": "teacher@taskboard.dev", "password": DEFAULT_PASSWORD,
        })
        assert res.status_code == 401

    async def test_brute_force_lockout(self, client: AsyncClient, test_user):
        for _ in range(MAX_LOGIN_ATTEMPTS):
            await client.post("/api/v1/auth/login", json={
                "email": "teacher@taskboard.dev", "password": "wrong-wrong",
            })
        res = await client.post("/api/v1/auth/login", json={
            "email": "teacher@taskboard.dev", "password": DEFAULT_PASSWORD,
        })
        assert res.status_code == 429

    async def test_login_records_last_login(self, client: AsyncClient, db_session, test_user):
        await client.post("/api/v1/auth/login", json={
            "email": "teacher@taskboard.dev", "password": DEFAULT_PASSWORD,
        })
        await db_session.refresh(test_user)
        assert test_user.last_login_at is not None
        events = (await db_session.execute(
            select(AuditLog).where(AuditLog.event_type == AuditEventType.USER_LOGIN)
        )).scalars().all()
        assert len(events) == 1

    async def test_last_login_write_failure_does_not_block_login(self, db_session, test_user, monkeypatch):
        async def failing_commit(self):
            raise OperationalError("UPDATE users", {}, Exception("database is locked"))

        monkeypatch.setattr(AsyncSession, "commit", failing_commit)
        user = await AuthService.authenticate_user("teacher@taskboard.dev", DEFAULT_PASSWORD, db_session)
        assert user is not None
        assert user.id == test_user.id
        assert user.last_login_at is None


@pytest.mark.asyncio
class TestRegistration:
    async def test_register_into_school(self, client: AsyncClient, test_org):
        res = await client.post("/api/v1/auth/register", json={
            "email": "newbie@taskboard.dev",
            "password": "SecurePass123!",
            "display_name": "New Teacher",
            "organisation_code": "tst001",
        })
        assert res.status_code == 200
        data = res.json()
        assert data["user"]["role"] == "teacher"
        assert data["user"]["organisation_id"] == test_org.id

    async def test_register_into_department(self, client: AsyncClient, db_session):
        dept = await make_org(db_session, "Finance", "FIN001", OrgType.DEPARTMENT)
        res = await client.post("/api/v1/auth/register", json={
            "email": "clerk@taskboard.dev",
            "password": "SecurePass123!",
            "organisation_code": "FIN001",
        })
        assert res.status_code == 200
        assert res.json()["user"]["role"] == "department_assistant"
        assert res.json()["user"]["organisation_id"] == dept.id

    async def test_register_reserved_test_domain(self, client: AsyncClient, test_org):
        res = await client.post("/api/v1/auth/register", json={
            "email": "jane@acme.test",
            "password": "SecurePass123!",
            "organisation_code": "TST001",
        })
        assert res.status_code == 200
        assert res.json()["user"]["email"] == "jane@acme.test"

    async def test_register_malformed_email(self, client: AsyncClient, test_org):
        res = await client.post("/api/v1/auth/register", json={
            "email": "jane@",
            "password": "SecurePass123!",
            "organisation_code": "TST001",
        })
        assert res.status_code == 422

    async def test_register_unknown_code(self, client: AsyncClient, test_org):
        res = await client.post("/api/v1/auth/register", json={
            "email": "lost@taskboard.dev",
            "password": "SecurePass123!",
            "organisation_code": "NOPE01",
        })
        assert res.status_code == 404

    async def test_register_duplicate_email(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/register", json={
            "email": "teacher@taskboard.dev",
            "password": "SecurePass123!",
            "organisation_code": "TST001",
        })
        assert res.status_code == 409

    async def test_register_weak_password(self, client: AsyncClient, test_org):
        res = await client.post("/api/v1/auth/register", json={
            "email": "weak@taskboard.dev",
            "password": "qx7z",
            "organisation_code": "TST001",
        })
        assert res.status_code == 422
        assert "request_id" in res.json()
        # The rejected password is not echoed back
        assert "qx7z" not in res.text


@pytest.mark.asyncio
class TestSession:
    async def test_me_includes_permissions(self, client: AsyncClient, coordinator):
        res = await client.get("/api/v1/auth/me", headers=get_auth_headers(coordinator))
        assert res.status_code == 200
        data = res.json()
        assert data["role"] == "coordinator"
        assert data["permissions"]["tasks"]["view_all"] is True
        assert data["permissions"]["users"]["create"] is False

    async def test_me_requires_token(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me")
        assert res.status_code in (401, 403)

    async def test_garbage_token_rejected(self, client: AsyncClient):
        res = await client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not.a.token"})
        assert res.status_code == 401

    async def test_deactivated_user_token_rejected(self, client: AsyncClient, db_session, test_user):
        headers = get_auth_headers(test_user)
        test_user.is_active = False
        await db_session.commit()
        res = await client.get("/api/v1/auth/me", headers=headers)
        assert res.status_code == 401

    async def test_logout_revokes_token(self, client: AsyncClient, test_user):
        headers = get_auth_headers(test_user)
        res = await client.post("/api/v1/auth/logout", headers=headers)
        assert res.status_code == 200
        res = await client.get("/api/v1/auth/me", headers=headers)
        assert res.status_code == 401
        assert res.json()["detail"] == "Token has been revoked"

    async def test_roles_catalogue(self, client: AsyncClient, test_user):
        res = await client.get("/api/v1/auth/roles", headers=get_auth_headers(test_user))
        assert res.status_code == 200
        roles = {r["role"]: r for r in res.json()}
        assert len(roles) == 15
        assert roles["super_admin"]["permissions"]["organisation"]["switch_organisation"] is True


@pytest.mark.asyncio
class TestChangePassword:
    async def test_change_password_completes_first_login(self, client: AsyncClient, db_session, test_org):
        user = await make_user(db_session, test_org, UserRole.TEACHER, "fresh@taskboard.dev", first_login_completed=False)
        db_session.add(PasswordReset(
            user_id=user.id,
            temporary_password_hash=user.password_hash,
            expires_at=user.created_at,
        ))
        await db_session.commit()

        res = await client.post("/api/v1/auth/change-password", json={
            "current_password": DEFAULT_PASSWORD,
            "new_password": "BrandNewPass1",
        }, headers=get_auth_headers(user))
        assert res.status_code == 200

        await db_session.refresh(user)
        assert user.first_login_completed is True
        assert AuthService.verify_password("BrandNewPass1", user.password_hash)
        resets = (await db_session.execute(
            select(PasswordReset).where(PasswordReset.user_id == user.id)
        )).scalars().all()
        assert all(r.used for r in resets)

    async def test_wrong_current_password(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/change-password", json={
            "current_password": "not-it",
            "new_password": "BrandNewPass1",
        }, headers=get_auth_headers(test_user))
        assert res.status_code == 401

    async def test_new_password_too_short(self, client: AsyncClient, test_user):
        res = await client.post("/api/v1/auth/change-password", json={
            "current_password": DEFAULT_PASSWORD,
            "new_password": "abc",
        }, headers=get_auth_headers(test_user))
        assert res.status_code == 400


def test_temporary_password_is_six_digits():
    for _ in range(20):
        pw = AuthService.generate_temporary_password()
        assert len(pw) == 6 and pw.isdigit()


def test_password_hashing():
    hashed = AuthService.hash_password("s3cret-value")
    assert AuthService.verify_password("s3cret-value", hashed)
    assert not AuthService.verify_password("other", hashed)
    assert not AuthService.verify_password("s3cret-value", "not-a-bcrypt-hash")
