# backend/zona_pedidos/security/tokens.py
# Tokens con la forma del proveedor de auth (sub, email, aud=authenticated).
# Solo para dev/QA: en prod los emite el proveedor.
from datetime import datetime, timedelta, timezone

import jwt


def mint_user_token(user_id: str, email: str, secret: str, *, audience: str = "authenticated",
                    hours: int = 12) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": str(user_id),
        "email": email,
        "aud": audience,
        "role": "authenticated",
        "iat": now,
        "exp": now + timedelta(hours=hours),
    }
    return jwt.encode(payload, secret, algorithm="HS256")

