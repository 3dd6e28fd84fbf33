import enum
import json
from datetime import datetime
from werkzeug.security import generate_password_hash, check_password_hash
from app import db


class RoleEnum(enum.Enum):
    admin    = "admin"
    staff    = "staff"
    customer = "customer"


class User(db.Model):
    """A back-office user or a shopper. Role and segments feed promotion targeting."""
    __tablename__ = 'users'

    id            = db.Column(db.Integer, primary_key=True)
    name          = db.Column(db.String(120), nullable=False)
    username      = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    role          = db.Column(db.Enum(RoleEnum), nullable=False, default=RoleEnum.customer)
    segments      = db.Column(db.Text, nullable=False, default='[]')   # JSON list, e.g. ["vip"]
    city          = db.Column(db.String(120), nullable=True)
    created_at    = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    # ── Password helpers ──────────────────────────────────────────
    def set_password(self, plain_password: str) -> None:
        """Hash and store the password. Never stores plain text."""
        self.password_hash = generate_password_hash(plain_password)

    def check_password(self, plain_password: str) -> bool:
        """Return True if the supplied password matches the stored hash."""
        return check_password_hash(self.password_hash, plain_password)

    # ── Segments ──────────────────────────────────────────────────
    @property
    def segments_list(self) -> list:
        try:
            value = json.loads(self.segments or '[]')
        except (ValueError, TypeError):
            return []
        return [str(s) for s in value] if isinstance(value, list) else []

    @segments_list.setter
    def segments_list(self, value: list):
        self.segments = json.dumps(list(value or []))

    def __repr__(self) -> str:
        return f"<User {self.username!r} role={self.role.value!r}>"
