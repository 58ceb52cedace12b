"""FastAPI dependency: require_admin_key.

Usage in any admin router:
    from src.tb_gateway.auth.dependencies import require_admin_key

    @router.post("/admin-only", dependencies=[Depends(require_admin_key)])
    async def admin_only():
        ...

User authentication lives in the upstream gateway; this service only guards
its operational endpoints with a shared key sent as `X-Admin-Key`.
"""

import secrets

from fastapi import Header

from config.settings import settings
from src.tb_common.errors import AdminAuthError


async def require_admin_key(x_admin_key: str | None = Header(None)) -> None:
    """Raise AdminAuthError unless X-Admin-Key matches ADMIN_API_KEY.

    An empty ADMIN_API_KEY disables the admin endpoints entirely.
    """
    expected = settings.ADMIN_API_KEY
    if not expected or x_admin_key is None:
        raise AdminAuthError()
    if not secrets.compare_digest(x_admin_key.encode(), expected.encode()):
        raise AdminAuthError()
