"""Credential checks used to authorize signatures."""
from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def verify_credential(user, secret: str) -> bool:
    """Check a signer's password against the stored hash. Users without a password never verify."""
    if not secret or not user.password_hash:
        return False
    return pwd_context.verify(secret, user.password_hash)
