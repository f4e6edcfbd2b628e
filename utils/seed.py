from models import db
from models.account import Role

DEFAULT_ROLES = [
    "admin_superieur",
    "admin",
    "agent",
    "validator",
    "user",
    "prestataire",
    "security_engineer",
]

def seed_roles():
    existing = {r.name for r in Role.query.all()}
    for name in DEFAULT_ROLES:
        if name not in existing:
            db.session.add(Role(name=name))
    db.session.commit()
