"""
Script to create (or promote) a super_admin profile with a password.

Used to bootstrap a fresh database: the first admin cannot be created through
the API because role changes themselves require an admin.
"""

import argparse
import asyncio

from sqlmodel import select

from app.core.auth import hash_password
from app.core.database import create_schema, get_session_context
from app.models.profile import Profile
from atom_shared.schemas.common import Role


async def create_admin(email: str, password: str, create_tables: bool = False) -> Profile:
    if create_tables:
        await create_schema()
        print("Ensured tables exist.")

    email = email.lower()
    async with get_session_context() as session:
        result = await session.execute(select(Profile).where(Profile.email == email))
        profile = result.scalar_one_or_none()

        if not profile:
            profile = Profile(
                email=email,
                first_name=email.split("@")[0],
                role=Role.SUPER_ADMIN.value,
                password_hash=hash_password(password),
            )
            session.add(profile)
            print(f"Created super_admin: {email}")
        else:
            profile.role = Role.SUPER_ADMIN.value
            profile.password_hash = hash_password(password)
            session.add(profile)
            print(f"Profile {email} already exists; promoted to super_admin and reset password.")

    print("Done.")
    return profile


def run() -> None:
    parser = argparse.ArgumentParser(description="Create a local super_admin profile.")
    parser.add_argument("--email", required=True, help="Email address for the admin")
    parser.add_argument("--password", required=True, help="Password for the admin")
    parser.add_argument("--create-tables", action="store_true", help="Create tables first (development)")

    args = parser.parse_args()

    asyncio.run(create_admin(args.email, args.password, args.create_tables))


if __name__ == "__main__":
    run()
