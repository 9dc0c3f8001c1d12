import os

import bcrypt

BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

# Verified against when the identity has no stored hash, so unknown and known
# accounts cost the same bcrypt work per attempt.
_DUMMY_HASH = bcrypt.hashpw(b"attempt-guard-placeholder", bcrypt.gensalt(rounds=BCRYPT_ROUNDS))

# bcrypt only reads the first 72 bytes; newer releases raise instead of truncating
MAX_PASSWORD_BYTES = 72

def _encode(plain_password: str) -> bytes:
    return plain_password.encode("utf-8")[:MAX_PASSWORD_BYTES]

def hash_password(plain_password: str) -> str:
    if not isinstance(plain_password, str) or len(plain_password) == 0:
        raise ValueError("Password must be a non-empty string")

    hashed = bcrypt.hashpw(_encode(plain_password), bcrypt.gensalt(rounds=BCRYPT_ROUNDS))
    return hashed.decode("utf-8")

def verify_password(plain_password, password_hash) -> bool:
    # Non-string input (e.g. a JSON number) is a wrong password, not an error
    usable = isinstance(plain_password, str) and len(plain_password) > 0
    if not usable or not password_hash:
        candidate = _encode(plain_password) if usable else b""
        bcrypt.checkpw(candidate, _DUMMY_HASH)
        return False
    candidate = _encode(plain_password)
    try:
        return bcrypt.checkpw(candidate, password_hash.encode("utf-8"))
    except ValueError:
        # malformed stored hash
        return False
