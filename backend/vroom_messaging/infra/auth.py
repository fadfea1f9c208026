"""Identity resolution for FastAPI endpoints and Socket.IO connections.

The identity provider is external: it either issues an HS256 access JWT or, in
development, the gateway forwards the authenticated id as ``X-User-Id``. The
resolved user id is trusted verbatim by the messaging core.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from vroom_messaging.infra import jwt as jwt_helper
from vroom_messaging.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	handle: Optional[str] = None
	display_name: Optional[str] = None
	roles: Tuple[str, ...] = ()

	def has_role(self, role: str) -> bool:
		return role in self.roles


_bearer_scheme = HTTPBearer(auto_error=False)


def verify_access_jwt(token: str) -> AuthenticatedUser:
	"""Decode and validate an access JWT and return an AuthenticatedUser."""
	try:
		payload = jwt_helper.decode_access(token)
	except Exception:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")

	sub = str(payload.get("sub") or "").strip()
	if not sub:
		raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")
	handle = payload.get("handle")
	display_name = payload.get("name") or payload.get("display_name")
	roles_claim = payload.get("roles")
	roles: Tuple[str, ...]
	if isinstance(roles_claim, (list, tuple)):
		roles = tuple(str(r).strip() for r in roles_claim if str(r).strip())
	elif isinstance(roles_claim, str):
		roles = tuple(part.strip() for part in roles_claim.split(",") if part.strip())
	else:
		roles = ()
	return AuthenticatedUser(
		id=sub,
		handle=str(handle) if handle is not None else None,
		display_name=str(display_name) if display_name is not None else None,
		roles=roles,
	)


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated user.

	In development we allow the ``X-User-Id`` header. In all other environments
	the header is ignored and a valid Bearer JWT is required.
	"""
	if credentials and credentials.scheme.lower() == "bearer":
		return verify_access_jwt(credentials.credentials)

	if settings.is_dev() and x_user_id and x_user_id.strip():
		return AuthenticatedUser(id=x_user_id.strip())

	raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")


def _header(scope: dict, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


def resolve_socket_user(environ: dict, auth: Optional[dict] = None) -> Optional[AuthenticatedUser]:
	"""Return the user a real-time connection claims, or None when anonymous.

	Accepts a bearer token (``auth.token`` or the Authorization header). Outside
	development a token is mandatory; in dev the plain ``userId`` (or
	``X-User-Id`` header) is trusted, mirroring the REST dev header.
	"""
	scope = environ.get("asgi.scope", environ)
	auth_payload = auth or environ.get("auth") or scope.get("auth") or {}
	token = auth_payload.get("token")
	if not token:
		auth_header = _header(scope, "authorization")
		if auth_header and auth_header.lower().startswith("bearer "):
			token = auth_header.split(" ", 1)[1]
	if token:
		try:
			return verify_access_jwt(str(token))
		except HTTPException:
			return None
	if not settings.is_dev():
		return None
	user_id = auth_payload.get("userId") or auth_payload.get("user_id") or _header(scope, "x-user-id")
	if not user_id or not str(user_id).strip():
		return None
	return AuthenticatedUser(id=str(user_id).strip())
