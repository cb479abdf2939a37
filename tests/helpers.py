from datetime import datetime

from auth import Principal, token_for

NOW = datetime(2026, 3, 2, 9, 0)
PASSWORD = "secret123"


def principal(user):
    return Principal.from_user(user)


def auth_headers(user):
    return {"Authorization": f"Bearer {token_for(user)}"}
