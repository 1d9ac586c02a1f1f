import os
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure repo root is on sys.path when running as a script (Windows-friendly).
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.licensing.models import Permission, Role, User  # noqa: E402
from app.licensing.modules.counters.service import ensure_counters  # noqa: E402
from app.licensing.modules.refrigerants.service import seed_default_catalog  # noqa: E402
from scripts._db_utils import script_session  # noqa: E402

# role key -> (role name, permission keys)
ROLE_PERMISSIONS = {
    "admin": (
        "Administrator",
        (
            "importers.view_all",
            "registrations.view",
            "registrations.submit",
            "registrations.approve",
            "imports.view",
            "imports.submit",
            "imports.schedule",
            "imports.approve",
            "quota.view",
            "quota.manage",
            "refrigerants.view",
            "refrigerants.edit",
            "counters.manage",
            "technicians.review",
        ),
    ),
    "customs": (
        "Customs Officer",
        (
            "importers.view_all",
            "registrations.view",
            "imports.view",
            "imports.schedule",
            "quota.view",
            "refrigerants.view",
            "technicians.review",
        ),
    ),
    "importer": (
        "Importer",
        (
            "registrations.view",
            "registrations.submit",
            "imports.view",
            "imports.submit",
            "quota.view",
            "refrigerants.view",
        ),
    ),
}

PERMISSION_NAMES = {
    "importers.view_all": "Importers: act on any importer",
    "registrations.view": "Registrations: view",
    "registrations.submit": "Registrations: submit",
    "registrations.approve": "Registrations: approve/reject",
    "imports.view": "Imports: view",
    "imports.submit": "Imports: submit/mark arrived",
    "imports.schedule": "Imports: schedule inspection",
    "imports.approve": "Imports: approve/reject",
    "quota.view": "Quota: view",
    "quota.manage": "Quota: manage importers and allowances",
    "refrigerants.view": "Refrigerants: view",
    "refrigerants.edit": "Refrigerants: edit catalog",
    "counters.manage": "Counters: view/advance",
    "technicians.review": "Technicians: review applications",
}


def seed_only(*, database_url: str | None = None) -> None:
    """
    Seed permissions/roles/admin user, counters and the default refrigerant
    catalog in an idempotent way. Does NOT overwrite an existing admin user's password.
    """
    admin_email = (os.environ.get("ADMIN_EMAIL") or "admin@licensing.local").strip().lower()
    admin_password = os.environ.get("ADMIN_PASSWORD") or "change-me"
    counter_seed = int((os.environ.get("COUNTER_SEED") or "1000").strip())

    db_url = (database_url or os.environ.get("DATABASE_URL") or "sqlite:///licensing.db").strip()

    # Use direct engine/session so this can run in release without importing app.wsgi (avoids recursion).
    with script_session(db_url) as s:
        # Permissions (idempotent)
        def ensure_perm(key: str) -> Permission:
            p = s.query(Permission).filter(Permission.key == key).one_or_none()
            if not p:
                p = Permission(key=key, name=PERMISSION_NAMES[key])
                s.add(p)
            return p

        perms = {key: ensure_perm(key) for key in PERMISSION_NAMES}

        roles: dict[str, Role] = {}
        for role_key, (role_name, keys) in ROLE_PERMISSIONS.items():
            role = s.query(Role).filter(Role.key == role_key).one_or_none()
            if not role:
                role = Role(key=role_key, name=role_name)
                s.add(role)
            for k in keys:
                if perms[k] not in role.permissions:
                    role.permissions.append(perms[k])
            roles[role_key] = role

        # User
        user = s.query(User).filter(User.email == admin_email).one_or_none()
        if not user:
            user = User(email=admin_email, password_hash=generate_password_hash(admin_password), is_active=True)
            s.add(user)
        if roles["admin"] not in user.roles:
            user.roles.append(roles["admin"])

        ensure_counters(s, seed=counter_seed)
        inserted = seed_default_catalog(s)

    print("Initialized database (seed_only).")
    print(f"Refrigerants inserted: {inserted}")
    print(f"Admin email: {admin_email}")
    print("Admin password: (from ADMIN_PASSWORD)")


def main() -> None:
    seed_only(database_url=None)


if __name__ == "__main__":
    main()
