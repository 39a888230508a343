import os

# Keep the suite off any developer Redis configured in .env
os.environ["REDIS_URL"] = ""

from typing import Iterable, Optional, Tuple

import pytest
from fastapi import Depends, Request
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from tontine_api.core.database.base import generate_ulid
from tontine_api.core.database.engine import get_db, init_db
from tontine_api.core.errors import NotAuthenticated
from tontine_api.features.associations.models import (
    Association,
    AssociationMember,
    MemberStatus,
    PermissionModel,
)
from tontine_api.features.associations.schemas import AssociationCreate
from tontine_api.features.associations.services import create_association
from tontine_api.features.permissions import services
from tontine_api.features.permissions.models import Role
from tontine_api.features.permissions.schemas import RoleCreate
from tontine_api.features.users.dependencies import get_current_user
from tontine_api.features.users.models import User, PLATFORM_MEMBER
from tontine_api.main import app


class Seeder:
    """Builds users, associations, members and roles directly in the database."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def user(
        self,
        first_name: str = "Awa",
        last_name: str = "Diallo",
        platform_role: str = PLATFORM_MEMBER,
        is_active: bool = True
    ) -> User:
        user = User(
            appwrite_id=generate_ulid(),
            first_name=first_name,
            last_name=last_name,
            platform_role=platform_role,
            is_active=is_active,
        )
        self.db.add(user)
        await self.db.commit()
        await self.db.refresh(user)
        return user

    async def association(
        self,
        admin: Optional[User] = None,
        name: str = "Diaspora Lyon",
        permission_model: str = PermissionModel.CATALOG.value,
        permissions_matrix: Optional[dict] = None
    ) -> Tuple[Association, AssociationMember]:
        admin = admin or await self.user("Moussa", "Kone")
        association, membership = await create_association(self.db, AssociationCreate(name=name), admin)
        await self.db.refresh(membership, ["user"])
        if permission_model != PermissionModel.CATALOG.value or permissions_matrix:
            association.permission_model = permission_model
            association.permissions_matrix = permissions_matrix
            await self.db.commit()
            await self.db.refresh(association)
        return association, membership

    async def member(
        self,
        association: Association,
        user: Optional[User] = None,
        status: str = MemberStatus.ACTIVE.value,
        roles: Iterable[str] = (),
        is_admin: bool = False,
        granted: Iterable[str] = (),
        revoked: Iterable[str] = ()
    ) -> AssociationMember:
        user = user or await self.user("Fatou", "Sow")
        member = AssociationMember(
            user_id=user.id,
            association_id=association.id,
            status=status,
            is_admin=is_admin,
            assigned_roles=list(roles),
            granted_permissions=list(granted),
            revoked_permissions=list(revoked),
        )
        self.db.add(member)
        await self.db.commit()
        await self.db.refresh(member, ["user"])
        return member

    async def role(
        self,
        association: Association,
        name: str = "Treasurer",
        permissions: Iterable[str] = ("finances.view_treasury",),
        is_unique: bool = False,
        **flags
    ) -> Role:
        role = await services.create_role(
            self.db,
            association.id,
            RoleCreate(name=name, permissions=list(permissions), is_unique=is_unique),
        )
        if flags:
            for field, value in flags.items():
                setattr(role, field, value)
            await self.db.commit()
            await self.db.refresh(role)
        return role


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool)
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest.fixture
def fresh(session_factory):
    """Load a row through a new session, bypassing the identity map of `db`."""

    async def load(model, ident):
        async with session_factory() as session:
            return await session.get(model, ident)

    return load


@pytest.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def override_current_user(request: Request, db: AsyncSession = Depends(get_db)) -> User:
        # Tests authenticate with "Authorization: Bearer <user id>"
        user_id = request.headers.get("Authorization", "").removeprefix("Bearer ").strip()
        if not user_id:
            raise NotAuthenticated()
        user = await db.get(User, user_id)
        if user is None or not user.is_active:
            raise NotAuthenticated()
        return user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_current_user
    app.state.limiter.enabled = False

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    def headers(user: User) -> dict:
        return {"Authorization": f"Bearer {user.id}"}

    return headers
