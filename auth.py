from fastapi import Header, HTTPException, status


def get_user_from_gateway(
    x_cinetron_user: str = Header(None, alias="X-Cinetron-User"),
    x_cinetron_is_admin: bool = Header(False, alias="X-Cinetron-Is-Admin"),
):
    """
    Trusts the user info passed from the authenticating gateway in front of
    the media server. The server is not meant to be exposed directly.
    """
    if not x_cinetron_user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing trusted user header. Access must be via the gateway."
        )
    return {"username": x_cinetron_user, "is_admin": x_cinetron_is_admin}


def require_admin(user: dict) -> dict:
    if not user.get("is_admin"):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required.")
    return user
