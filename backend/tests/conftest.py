# tests/conftest.py — Shared test fixtures
import os
import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["EMAIL_API_URL"] = ""

import auth
from models import Base, User, Organisation, UserRole, OrgType, default_org_settings
from auth import AuthService
from database import get_db_session
from main import app

DEFAULT_PASSWORD = "Password123!"


@pytest.fixture(autouse=True)
def reset_login_attempts():
    auth._login_attempts.clear()
    yield
    auth._login_attempts.clear()


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def make_org(db_session, name: str, code: str, org_type: OrgType = OrgType.SCHOOL, **settings) -> Organisation:
    org_settings = default_org_settings(name)
    org_settings["features"].update(settings)
    org = Organisation(
        id=str(uuid.uuid4()),
        name=name,
        code=code,
        org_type=org_type,
        settings=org_settings,
        is_active=True,
    )
    db_session.add(org)
    await db_session.commit()
    await db_session.refresh(org)
    return org


async def make_user(db_session, org: Organisation, role: UserRole, email: str, **kwargs) -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        display_name=kwargs.pop("display_name", email.split("@")[0].title()),
        password_hash=AuthService.hash_password(kwargs.pop("password", DEFAULT_PASSWORD)),
        organisation_id=org.id,
        role=role,
        is_active=kwargs.pop("is_active", True),
        first_login_completed=kwargs.pop("first_login_completed", True),
        **kwargs,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_org(db_session):
    """The home school for most tests"""
    return await make_org(db_session, "Test School", "TST001")


@pytest_asyncio.fixture
async def other_org(db_session):
    return await make_org(db_session, "Other School", "OTH001")


@pytest_asyncio.fixture
async def test_user(db_session, test_org):
    """A teacher: the least privileged school role"""
    return await make_user(db_session, test_org, UserRole.TEACHER, "teacher@taskboard.dev")


@pytest_asyncio.fixture
async def second_user(db_session, test_org):
    return await make_user(db_session, test_org, UserRole.SALESPERSON, "sales@taskboard.dev")


@pytest_asyncio.fixture
async def coordinator(db_session, test_org):
    return await make_user(db_session, test_org, UserRole.COORDINATOR, "coordinator@taskboard.dev")


@pytest_asyncio.fixture
async def admin_user(db_session, test_org):
    return await make_user(db_session, test_org, UserRole.ADMIN, "admin@taskboard.dev")


@pytest_asyncio.fixture
async def super_admin(db_session, test_org):
    return await make_user(db_session, test_org, UserRole.SUPER_ADMIN, "superadmin@taskboard.dev")


@pytest_asyncio.fixture
async def franchise_admin(db_session, test_org):
    return await make_user(db_session, test_org, UserRole.FRANCHISE_ADMIN, "franchise@taskboard.dev")


@pytest_asyncio.fixture
async def outsider(db_session, other_org):
    """An admin in a different organisation"""
    return await make_user(db_session, other_org, UserRole.ADMIN, "outsider@taskboard.dev")


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    return {"Authorization": f"Bearer {AuthService.token_for_user(user)}"}
