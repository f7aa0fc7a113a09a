import logging

from passlib.context import CryptContext
from sqlalchemy import case, func, select, update as sql_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tripsalama.database import utcnow
from tripsalama.errors import ConflictError, NotFoundError
from tripsalama.models.ride import Rating, Ride
from tripsalama.models.user import User
from tripsalama.schemas.schemas import RideStatusEnum, RoleEnum

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

UPDATABLE_FIELDS = {"first_name", "last_name", "phone", "avatar_path", "is_verified", "is_active"}


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


async def find_by_id(user_id: int, db: AsyncSession) -> User | None:
    return await db.get(User, user_id, populate_existing=True)


async def find_by_email(email: str, db: AsyncSession) -> User | None:
    result = await db.execute(select(User).where(User.email == email.strip().lower()))
    return result.scalar_one_or_none()


async def email_exists(email: str, db: AsyncSession, exclude_id: int | None = None) -> bool:
    stmt = select(func.count(User.id)).where(User.email == email.strip().lower())
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    return (await db.execute(stmt)).scalar_one() > 0


async def create_user(
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    db: AsyncSession,
    phone: str | None = None,
    role: RoleEnum = RoleEnum.passenger,
) -> User:
    """Passengers are verified on sign-up; drivers wait for identity review."""
    role = RoleEnum(role)
    email = email.strip().lower()
    if await email_exists(email, db):
        raise ConflictError("Email already registered")

    user = User(
        email=email,
        password_hash=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        phone=phone,
        role=role.value,
        is_verified=role is RoleEnum.passenger,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ConflictError("Email already registered")
    await db.refresh(user)
    logger.info("User %s registered as %s", user.id, role.value)
    return user


async def update(user_id: int, db: AsyncSession, **fields) -> User:
    """Writes only the whitelisted profile fields; everything else is ignored."""
    values = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS}
    if values:
        values["updated_at"] = utcnow()
        await db.execute(
            sql_update(User).where(User.id == user_id).values(**values).execution_options(synchronize_session=False)
        )
        await db.commit()
    user = await find_by_id(user_id, db)
    if user is None:
        raise NotFoundError("User not found")
    return user


async def update_password(user_id: int, password: str, db: AsyncSession) -> None:
    await db.execute(
        sql_update(User)
        .where(User.id == user_id)
        .values(password_hash=hash_password(password), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def update_last_login(user_id: int, db: AsyncSession) -> None:
    await db.execute(
        sql_update(User)
        .where(User.id == user_id)
        .values(last_login_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def get_by_role(role: str, db: AsyncSession, active_only: bool = True) -> list[User]:
    stmt = select(User).where(User.role == RoleEnum(role).value)
    if active_only:
        stmt = stmt.where(User.is_active.is_(True))
    result = await db.execute(stmt.order_by(User.created_at.desc(), User.id.desc()))
    return list(result.scalars())


async def authenticate(email: str, password: str, db: AsyncSession) -> User | None:
    user = await find_by_email(email, db)
    if user is None or not user.is_active or not verify_password(password, user.password_hash):
        logger.warning("Failed login for %s", email)
        return None
    await update_last_login(user.id, db)
    return user


async def get_stats(user_id: int, db: AsyncSession) -> dict:
    """Ride counts on the user's side of the ride, plus the average rating received."""
    user = await find_by_id(user_id, db)
    if user is None:
        raise NotFoundError("User not found")

    if user.role == RoleEnum.driver.value:
        owner, received = Ride.driver_id, Rating.passenger_rating
    else:
        owner, received = Ride.passenger_id, Rating.driver_rating

    result = await db.execute(
        select(
            func.count(Ride.id),
            func.count(case((Ride.status == RideStatusEnum.completed.value, Ride.id))),
            func.avg(received),
        )
        .select_from(Ride)
        .outerjoin(Rating, Rating.ride_id == Ride.id)
        .where(owner == user_id)
    )
    total, completed, avg_rating = result.one()
    return {
        "total_rides": int(total or 0),
        "completed_rides": int(completed or 0),
        "avg_rating": round(float(avg_rating), 2) if avg_rating is not None else None,
    }
