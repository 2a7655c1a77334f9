"""
HTTP client for the remote data service (identity + table API).

Every failure leaves this module as a RemoteError subclass whose kind is
decided here from the transport outcome and the HTTP status / Postgres code:

    any transport failure, 408, 429, 5xx     -> NetworkError
    malformed URL or header                   -> PermanentFailure
    409 or code 23505 (duplicate key)         -> RemoteConflict
    400, 401, 403, 404, 422                   -> ValidationError
    anything else                             -> PermanentFailure
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from shared.errors import (
    NetworkError, PermanentFailure, RemoteConflict, RemoteError, ValidationError
)

logger = logging.getLogger(__name__)

DUPLICATE_KEY_CODE = '23505'

VALIDATION_STATUSES = {400, 401, 403, 404, 422}
TRANSIENT_STATUSES = {408, 429}


@dataclass
class Identity:
    user_id: str
    email: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    user_metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'user_id': self.user_id,
            'email': self.email,
            'access_token': self.access_token,
            'refresh_token': self.refresh_token,
            'user_metadata': self.user_metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Identity":
        return cls(
            user_id=data['user_id'],
            email=data.get('email'),
            access_token=data.get('access_token'),
            refresh_token=data.get('refresh_token'),
            user_metadata=data.get('user_metadata') or {},
        )

    @classmethod
    def from_auth_response(cls, payload: dict, access_token: str = None,
                           refresh_token: str = None) -> "Identity":
        user = payload.get('user') or payload
        if not user or not user.get('id'):
            raise ValidationError("No user data returned")
        return cls(
            user_id=user['id'],
            email=user.get('email'),
            access_token=payload.get('access_token') or access_token,
            refresh_token=payload.get('refresh_token') or refresh_token,
            user_metadata=user.get('user_metadata') or {},
        )


def classify_response(response: requests.Response) -> Optional[RemoteError]:
    """Map an HTTP error response to a tagged RemoteError (None on success)."""
    status = response.status_code
    if status < 400:
        return None

    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    code = body.get('code') or body.get('error_code')
    if code is not None:
        code = str(code)
    message = (
        body.get('message') or body.get('msg') or body.get('error_description')
        or body.get('error') or f"HTTP {status}"
    )

    if status == 409 or code == DUPLICATE_KEY_CODE:
        return RemoteConflict(message, code=code, status=status)
    if status in TRANSIENT_STATUSES or status >= 500:
        return NetworkError(message, code=code, status=status)
    if status in VALIDATION_STATUSES:
        return ValidationError(message, code=code, status=status)
    return PermanentFailure(message, code=code, status=status)


class RemoteDataService:
    """
    Identity endpoints live under /auth/v1, tables under /rest/v1/<table>.

    The authenticated identity is held in memory and, when a store is given,
    persisted under session_key before the call that produced it returns.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = '',
        timeout: float = 10.0,
        session: requests.Session = None,
        store=None,
        session_key: str = 'AUTH_SESSION'
    ):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout
        self.http = session or requests.Session()
        self.store = store
        self.session_key = session_key
        self._identity: Optional[Identity] = None

    # ==================== Transport ====================

    def _headers(self, extra: dict = None) -> dict:
        token = self._identity.access_token if self._identity and self._identity.access_token else self.api_key
        headers = {
            'apikey': self.api_key,
            'Authorization': f'Bearer {token}',
            'Content-Type': 'application/json',
        }
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, path: str, params: dict = None, json_body: Any = None,
                 headers: dict = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self.http.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers(headers),
                timeout=self.timeout
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise NetworkError(f"Network error calling {method} {path}: {e}") from e
        except (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema,
                requests.exceptions.InvalidSchema, requests.exceptions.InvalidHeader,
                requests.exceptions.URLRequired) as e:
            raise PermanentFailure(f"Request to {method} {path} could not be built: {e}") from e
        except requests.exceptions.RequestException as e:
            # Failed in transit, e.g. a connection dropped mid-response.
            raise NetworkError(f"Network error calling {method} {path}: {e}") from e

        error = classify_response(response)
        if error is not None:
            raise error

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    # ==================== Identity ====================

    def sign_up(self, email: str, password: str, metadata: dict = None) -> Identity:
        payload = self._request('POST', '/auth/v1/signup', json_body={
            'email': email,
            'password': password,
            'data': metadata or {},
        })
        identity = Identity.from_auth_response(payload or {})
        self._set_identity(identity)
        return identity

    def sign_in_with_password(self, email: str, password: str) -> Identity:
        payload = self._request(
            'POST', '/auth/v1/token',
            params={'grant_type': 'password'},
            json_body={'email': email, 'password': password}
        )
        identity = Identity.from_auth_response(payload or {})
        self._set_identity(identity)
        return identity

    def authorize_url(self, provider: str, redirect_to: str, extra: dict = None) -> str:
        params = {'provider': provider, 'redirect_to': redirect_to}
        if extra:
            params.update(extra)
        return f"{self.base_url}/auth/v1/authorize?{urlencode(params)}"

    def set_session(self, access_token: str, refresh_token: str) -> Identity:
        """Establish the session from tokens handed back by an OAuth round-trip."""
        user = self._request(
            'GET', '/auth/v1/user',
            headers={'Authorization': f'Bearer {access_token}'}
        )
        identity = Identity.from_auth_response(
            {'user': user} if user and 'user' not in user else (user or {}),
            access_token=access_token,
            refresh_token=refresh_token
        )
        self._set_identity(identity)
        return identity

    def get_session(self) -> Optional[Identity]:
        if self._identity is None and self.store is not None:
            raw = self.store.get(self.session_key)
            if raw:
                try:
                    self._identity = Identity.from_dict(json.loads(raw))
                except (ValueError, KeyError, TypeError) as e:
                    logger.error(f"Discarding unreadable stored session: {e}")
                    self.store.delete(self.session_key)
        return self._identity

    def sign_out(self, scope: str = 'local'):
        """
        scope='local' only drops the session held on this device;
        any other scope also revokes it remotely first.
        """
        identity = self._identity
        if scope != 'local' and identity and identity.access_token:
            self._request('POST', '/auth/v1/logout', params={'scope': scope})

        self._identity = None
        if self.store is not None:
            self.store.delete(self.session_key)

    def _set_identity(self, identity: Identity):
        self._identity = identity
        if self.store is not None:
            self.store.set(self.session_key, json.dumps(identity.to_dict()))

    # ==================== Tables ====================

    @staticmethod
    def _filters(filters: dict) -> dict:
        params = {}
        for column, value in filters.items():
            if isinstance(value, bool):
                value = 'true' if value else 'false'
            params[column] = f"eq.{value}"
        return params

    def insert(self, table: str, row: dict) -> Optional[dict]:
        rows = self._request(
            'POST', f'/rest/v1/{table}',
            json_body=row,
            headers={'Prefer': 'return=representation'}
        )
        if isinstance(rows, list):
            return rows[0] if rows else None
        return rows

    def update(self, table: str, values: dict, **filters) -> List[dict]:
        rows = self._request(
            'PATCH', f'/rest/v1/{table}',
            params=self._filters(filters),
            json_body=values,
            headers={'Prefer': 'return=representation'}
        )
        return rows or []

    def select(self, table: str, columns: str = '*', order: str = None, **filters) -> List[dict]:
        params = {'select': columns}
        params.update(self._filters(filters))
        if order:
            params['order'] = order
        return self._request('GET', f'/rest/v1/{table}', params=params) or []

    def select_one(self, table: str, columns: str = '*', **filters) -> Optional[dict]:
        rows = self.select(table, columns=columns, **filters)
        return rows[0] if rows else None
