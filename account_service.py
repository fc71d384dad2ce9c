import logging
from typing import Dict, Optional

from auth import StaticAuthProvider, resolve_user
from db import AsyncDatabase, UserRepository
from models import User, now_timestamp

logger = logging.getLogger(__name__)

# Children first so foreign keys hold at every step.
_USER_TABLES = (
    "workout",
    "goal",
    "user_metrics",
    "streak",
    "daily_log",
    "milestone",
    "notification",
    "users",
)


class AccountService:
    """Local side of the account lifecycle."""

    def __init__(
        self,
        db: AsyncDatabase,
        users: UserRepository,
        auth: Optional[StaticAuthProvider] = None,
    ) -> None:
        self.db = db
        self.users = users
        self.auth = auth

    async def sign_in(
        self,
        user_id: str,
        first_name: str = "",
        last_name: str = "",
        height_cm: Optional[float] = None,
    ) -> User:
        """Create the local profile on first sign-in, otherwise stamp the login."""
        now = now_timestamp()
        user = await self.users.get(user_id)
        if user is None:
            user = User(
                user_id=user_id,
                first_name=first_name,
                last_name=last_name,
                height_cm=height_cm,
                registration_date=now,
                last_login=now,
            )
            await self.users.upsert(user)
            logger.info("registered local user %s", user_id)
        else:
            await self.users.record_login(user_id, now)
            user.last_login = now
        if self.auth is not None:
            self.auth.sign_in(user_id)
        return user

    def sign_out(self) -> None:
        if self.auth is not None:
            self.auth.sign_out()

    async def get_user(self, user_id: Optional[str] = None) -> Optional[User]:
        return await self.users.get(resolve_user(self.auth, user_id))

    async def update_profile(self, user: User) -> bool:
        return await self.users.update(user)

    async def delete_local_data(self, user_id: Optional[str] = None) -> Dict[str, int]:
        """Remove every local row owned by the user; returns rows deleted per table.

        Nothing is queued for sync: the remote copy is handled by the
        account deletion flow itself.
        """
        user = resolve_user(self.auth, user_id)
        counts: Dict[str, int] = {}
        async with self.db.transaction():
            counts["workout_set"] = await self.db.execute_update(
                "DELETE FROM workout_set WHERE workout_exercise_id IN ("
                "SELECT we.workout_exercise_id FROM workout_exercise we "
                "JOIN workout w ON we.workout_id = w.workout_id WHERE w.user_id = ?);",
                (user,),
            )
            counts["workout_exercise"] = await self.db.execute_update(
                "DELETE FROM workout_exercise WHERE workout_id IN ("
                "SELECT workout_id FROM workout WHERE user_id = ?);",
                (user,),
            )
            for table in _USER_TABLES:
                counts[table] = await self.db.execute_update(
                    f"DELETE FROM {table} WHERE user_id = ?;", (user,)
                )
            counts["sync_queue"] = await self.db.execute_update(
                "DELETE FROM sync_queue WHERE table_name = 'users' AND record_id = ?;",
                (user,),
            )
        logger.info("deleted local data of user %s (%d rows)", user, sum(counts.values()))
        if self.auth is not None and self.auth.current_user_id() == user:
            self.auth.sign_out()
        return counts
