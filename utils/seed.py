from models import db
from models.user import Role

DEFAULT_ROLES = ("USER", "ADMIN")


def get_or_create_role(name: str) -> Role:
    role = Role.query.filter_by(name=name).first()
    if role is None:
        role = Role(name=name)
        db.session.add(role)
        db.session.flush()
    return role


def seed_roles() -> None:
    for name in DEFAULT_ROLES:
        get_or_create_role(name)
    db.session.commit()


def grant_role(user, name: str) -> bool:
    """Attach ``name`` to the user; False if already held. Caller commits."""
    role = get_or_create_role(name)
    if role in user.roles:
        return False
    user.roles.append(role)
    return True
