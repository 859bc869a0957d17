from dataclasses import dataclass, field
from functools import lru_cache
from urllib.parse import quote, unquote
from uuid import UUID

import httpx
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from loguru import logger
from pydantic import ValidationError

from app import settings
from app.errors import Unauthorized
from app.schemas import AggregateRating, Listing
from app.scopes import BOOKING_SCOPE_DESCRIPTIONS, BookingScope

oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl=f"{settings.users_ms_url}/auth/token",
    scopes={
        "services:read": "Browse and search public service listings.",
        **BOOKING_SCOPE_DESCRIPTIONS,
    },
)


@dataclass
class CurrentUser:
    id: UUID
    username: str
    scopes: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return "admin:scopes" in self.scopes


def get_current_user(
    x_user_id: str = Header(...),
    x_username: str = Header(...),
    x_user_scopes: str = Header(default=""),
) -> CurrentUser:
    """
    Reads the headers injected by the gateway after forwardAuth validation.
    The JWT has already been verified, we just trust these headers.
    NOTE: This only works behind the gateway. Run with that assumption.
    """
    try:
        user_id = UUID(x_user_id)
    except (ValueError, TypeError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identity from gateway",
        ) from None

    scopes = x_user_scopes.split(" ") if x_user_scopes else []

    return CurrentUser(id=user_id, username=unquote(x_username), scopes=scopes)


def get_optional_user(
    x_user_id: str | None = Header(default=None),
    x_username: str | None = Header(default=None),
    x_user_scopes: str = Header(default=""),
) -> CurrentUser | None:
    """Like get_current_user, but anonymous callers get None (public routes)."""
    if not x_user_id or not x_username:
        return None
    return get_current_user(x_user_id, x_username, x_user_scopes)


def require_scopes(*required: str):
    """
    Factory that returns a dependency enforcing one or more scopes.

    Usage:
        @router.get("/protected")
        async def route(user = Depends(require_scopes("bookings:read"))):
            ...
    """

    async def _dep(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        missing = [s for s in required if s not in current_user.scopes]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required scopes: {', '.join(missing)}",
            )
        return current_user

    return _dep


def require_any_scope(*accepted: str):
    """Like require_scopes, but one of ``accepted`` is enough."""

    async def _dep(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        if not any(s in current_user.scopes for s in accepted):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires one of: {', '.join(accepted)}",
            )
        return current_user

    return _dep


# ---------------------------------------------------------------------------
# Pre-built scope dependencies
# ---------------------------------------------------------------------------

can_read_booking = require_scopes(BookingScope.READ)
can_write_booking = require_scopes(BookingScope.WRITE)
can_cancel_booking = require_scopes(BookingScope.CANCEL)
can_review_booking = require_scopes(BookingScope.REVIEW)
can_pay_booking = require_scopes(BookingScope.PAY)
can_manage_booking = require_scopes(BookingScope.MANAGE)
can_admin_read_booking = require_any_scope(BookingScope.ADMIN, BookingScope.ADMIN_READ)
can_admin_write_booking = require_any_scope(BookingScope.ADMIN, BookingScope.ADMIN_WRITE)
can_moderate_reviews = require_any_scope(BookingScope.ADMIN, BookingScope.ADMIN_MODERATE)


def _forwarded_headers(user: CurrentUser | None) -> dict[str, str]:
    if user is None:
        return {}
    return {
        "X-User-Id": str(user.id),
        "X-Username": quote(user.username),
        "X-User-Scopes": " ".join(user.scopes),
    }


# ---------------------------------------------------------------------------
# CatalogClient: thin async wrapper around catalog-ms internal API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_catalog_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.catalog_ms_url,
        timeout=httpx.Timeout(settings.catalog_timeout),
        follow_redirects=True,
    )


class CatalogClient:
    """
    Thin async wrapper around the catalog-ms internal API.
    Forwards gateway-injected user headers so catalog-ms auth deps work normally.
    """

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_catalog_http_client()

    async def get_listing(
        self, listing_id: UUID, user: CurrentUser | None = None
    ) -> Listing | None:
        """Returns the listing or None if 404. Raises HTTPException on other errors."""
        try:
            resp = await self._client.get(
                f"/services/{listing_id}", headers=_forwarded_headers(user)
            )
        except httpx.RequestError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="catalog-ms unavailable, please retry",
            ) from exc
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"catalog-ms returned {resp.status_code}",
            )
        try:
            return Listing.model_validate(resp.json())
        except (ValidationError, ValueError) as exc:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail="catalog-ms returned a malformed service",
            ) from exc

    async def get_provider_id(self, user: CurrentUser) -> UUID | None:
        """Provider profile id of ``user``, or None when they have none."""
        try:
            resp = await self._client.get("/providers/me", headers=_forwarded_headers(user))
        except httpx.RequestError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="catalog-ms unavailable, please retry",
            ) from exc
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"catalog-ms returned {resp.status_code} for provider profile",
            )
        return UUID(resp.json()["id"])

    async def _push_rating(self, path: str, rating: AggregateRating) -> bool:
        try:
            resp = await self._client.patch(
                path,
                json={"rating": str(rating.average), "total_reviews": rating.count},
            )
        except httpx.RequestError:
            logger.warning("Rating update to catalog-ms failed: {}", path, exc_info=True)
            return False
        if resp.status_code >= 400:
            logger.warning("catalog-ms returned {} for {}", resp.status_code, path)
            return False
        return True

    async def update_listing_rating(self, listing_id: UUID, rating: AggregateRating) -> bool:
        """Best-effort; returns False on any error."""
        return await self._push_rating(f"/internal/services/{listing_id}/rating", rating)

    async def update_provider_rating(
        self, provider_id: UUID, rating: AggregateRating
    ) -> bool:
        """Best-effort; returns False on any error."""
        return await self._push_rating(f"/internal/providers/{provider_id}/rating", rating)


_catalog_client = CatalogClient()


def get_catalog_client() -> CatalogClient:
    return _catalog_client


# ---------------------------------------------------------------------------
# UsersClient: thin async wrapper around users-ms internal API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_users_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.users_ms_url,
        timeout=httpx.Timeout(5.0),
        follow_redirects=True,
    )


class UsersClient:
    """
    Thin async wrapper around the users-ms internal API.
    Forwards gateway-injected user headers so users-ms auth deps work normally.
    """

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_users_http_client()

    async def get_by_ids(self, user_ids: set[UUID], user: CurrentUser) -> list[dict]:
        """Bulk-fetch users by ID for name enrichment. Fails silently."""
        if not user_ids:
            return []
        try:
            params = [("ids", str(uid)) for uid in user_ids]
            resp = await self._client.get(
                "/users/bulk", params=params, headers=_forwarded_headers(user)
            )
            if resp.status_code >= 400 or not resp.content:
                return []
            return resp.json()
        except (httpx.RequestError, ValueError):
            return []


_users_client = UsersClient()


def get_users_client() -> UsersClient:
    return _users_client


# ---------------------------------------------------------------------------
# Provider identity
# ---------------------------------------------------------------------------


async def get_current_provider_id(
    current_user: CurrentUser = Depends(can_manage_booking),
    catalog: CatalogClient = Depends(get_catalog_client),
) -> UUID:
    """Provider profile of the caller; reservations are matched against it."""
    provider_id = await catalog.get_provider_id(current_user)
    if provider_id is None:
        raise Unauthorized("Provider profile not found")
    return provider_id
