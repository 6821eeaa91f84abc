import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.peptrack.config import load_settings
from app.peptrack.models import Permission, Role, User
from app.peptrack.rbac import PROPOSAL_PERMISSIONS, ROLE_PERMISSIONS
from scripts._db_utils import script_session

PERMISSION_NAMES: dict[str, str] = {"admin.view": "Admin: view shell", **PROPOSAL_PERMISSIONS}

ROLE_NAMES = {
    "admin": "Administrator",
    "editor": "Editor",
    "author": "Author",
}


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user in an idempotent way.
    Does NOT overwrite an existing admin user's password.
    """
    settings = load_settings()
    admin_email = settings.admin_email
    # Not part of Settings: only the seed ever reads it.
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"

    db_url = (database_url or settings.database_url).strip()

    # Direct engine/session so release can seed without building the Flask app.
    with script_session(db_url) as s:
        perms: dict[str, Permission] = {}
        for key, name in PERMISSION_NAMES.items():
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=name)
                s.add(p)
            perms[key] = p

        roles: dict[str, Role] = {}
        for role_key, perm_keys in ROLE_PERMISSIONS.items():
            role = s.query(Role).filter(Role.key == role_key).one_or_none()
            if not role:
                role = Role(key=role_key, name=ROLE_NAMES.get(role_key, role_key.title()))
                s.add(role)
            for key in perm_keys:
                if perms[key] not in role.permissions:
                    role.permissions.append(perms[key])
            roles[role_key] = role

        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

    print("Initialized database (seed_only).")
    print(f"Roles: {', '.join(ROLE_PERMISSIONS)}")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
