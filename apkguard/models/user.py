from sqlalchemy import Column, Integer, String, DateTime, Boolean
from datetime import datetime, timezone
from apkguard.database import Base
import secrets
import bcrypt


def _utcnow():
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    password_hash = Column(String, nullable=False)

    # API key authentication for the mobile client
    api_key = Column(String, unique=True, nullable=True, index=True)
    api_key_prefix = Column(String(8), nullable=True, index=True)  # First 8 chars for O(1) lookup

    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    last_login = Column(DateTime(timezone=True))

    @staticmethod
    def hash_secret(secret: str) -> str:
        """Hash a password or API key using bcrypt"""
        return bcrypt.hashpw(secret.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    @staticmethod
    def verify_secret(secret: str, hashed: str) -> bool:
        try:
            return bcrypt.checkpw(secret.encode('utf-8'), hashed.encode('utf-8'))
        except ValueError:
            return False

    @staticmethod
    def get_key_prefix(api_key: str) -> str:
        """Return first 8 chars of plaintext key for O(1) lookup"""
        return api_key[:8]

    def check_password(self, password: str) -> bool:
        return self.verify_secret(password, self.password_hash)

    @classmethod
    def create_user(cls, email: str, password: str, name: str = None):
        """Factory method to create user with hashed password and API key"""
        plaintext_key = secrets.token_urlsafe(32)

        user = cls(
            email=email,
            name=name,
            password_hash=cls.hash_secret(password),
            api_key=cls.hash_secret(plaintext_key),
            api_key_prefix=cls.get_key_prefix(plaintext_key),
            is_active=True,
        )

        # Attach plaintext key for one-time return (not stored)
        user._plaintext_api_key = plaintext_key
        return user
