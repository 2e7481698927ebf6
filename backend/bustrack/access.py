from typing import Optional

from .errors import Forbidden, Unauthenticated
from .models import Rider, Role


def ensure_role(rider: Optional[Rider], *roles: Role) -> Rider:
    """Admit the rider only if it holds one of ``roles``."""
    if rider is None:
        raise Unauthenticated()
    allowed = {role.value for role in roles}
    if rider.role not in allowed:
        names = " or ".join(sorted(allowed))
        raise Forbidden(f"{names.capitalize()} privileges required")
    return rider
