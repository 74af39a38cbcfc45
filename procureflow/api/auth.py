from typing import Optional
from fastapi import Header


def get_current_actor(x_user_name: Optional[str] = Header(None)) -> str:
    """
    Name of the person performing the request.
    Identity is established upstream and passed in the X-User-Name header.
    """
    if x_user_name and x_user_name.strip():
        return x_user_name.strip()
    return "system"
