"""
Google OAuth access/refresh token lifecycle

Decides on every authenticated request whether the cached access token can be
used as-is or must be refreshed against Google's token endpoint, and sorts
refresh failures into terminal (user must sign in again) and transient
(try again later).
"""
import time
import requests


TERMINAL_ERROR = 'RefreshAccessTokenError'
TRANSIENT_ERROR = 'TransientRefreshError'

TERMINAL = 'terminal'
TRANSIENT = 'transient'

DEFAULT_TOKEN_URI = 'https://oauth2.googleapis.com/token'
DEFAULT_SKEW_BUFFER_MS = 5 * 60 * 1000
DEFAULT_EXPIRES_IN = 3600

# Error codes and description fragments that mean the refresh token itself is dead
TERMINAL_ERROR_CODES = ('invalid_grant',)
TERMINAL_DESCRIPTION_FRAGMENTS = ('expired or revoked',)

# Keys under which wrappers nest the provider's error body
NESTED_PAYLOAD_KEYS = ('response', 'data', 'response_data', 'body')


class AuthError(Exception):
    """Base class for token lifecycle failures"""
    code = 'AUTH_ERROR'


class SessionExpiredError(AuthError):
    """Terminal failure - the user has to sign in again"""
    code = 'AUTH_EXPIRED'


class SessionInvalid(SessionExpiredError):
    """Session was already marked terminal; nothing was attempted"""


class NoRefreshToken(SessionExpiredError):
    """No refresh token was ever stored for this session"""


class InvalidGrant(SessionExpiredError):
    """Google rejected the refresh token (expired or revoked)"""


class TransientRefreshFailure(AuthError):
    """Refresh failed for a reason a later request may not hit"""
    code = 'TRY_AGAIN'


def now_ms():
    return int(time.time() * 1000)


class TokenSession:
    """
    Token state for one signed-in principal.

    The manager mutates this record in place; callers own where it lives
    (Flask session cookie for the access token, database for the refresh token).
    """

    def __init__(self, access_token=None, refresh_token=None, access_token_expires_at=None, last_error=None):
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.access_token_expires_at = access_token_expires_at
        self.last_error = last_error

    @property
    def is_invalid(self):
        return self.last_error == TERMINAL_ERROR

    def invalidate(self):
        """Mark terminal and drop every credential so nothing stale gets reused"""
        self.access_token = None
        self.refresh_token = None
        self.access_token_expires_at = None
        self.last_error = TERMINAL_ERROR

    def to_dict(self, include_refresh_token=False):
        data = {
            'access_token': self.access_token,
            'access_token_expires_at': self.access_token_expires_at,
            'last_error': self.last_error,
        }
        if include_refresh_token:
            data['refresh_token'] = self.refresh_token
        return data

    @classmethod
    def from_dict(cls, data, refresh_token=None):
        data = data or {}
        return cls(
            access_token=data.get('access_token'),
            refresh_token=data.get('refresh_token', refresh_token) or refresh_token,
            access_token_expires_at=data.get('access_token_expires_at'),
            last_error=data.get('last_error'),
        )

    def __repr__(self):
        return (f'<TokenSession expires_at={self.access_token_expires_at} '
                f'has_refresh_token={self.refresh_token is not None} last_error={self.last_error}>')


def _is_terminal_payload(payload, depth=0):
    """Check one error body (and anything nested under it) for a terminal signal"""
    if depth > 4:
        return False

    if isinstance(payload, str):
        text = payload.lower()
        if any(code in text for code in TERMINAL_ERROR_CODES):
            return True
        return any(fragment in text for fragment in TERMINAL_DESCRIPTION_FRAGMENTS)

    if not isinstance(payload, dict):
        return False

    error = payload.get('error')
    if isinstance(error, str) and error.lower() in TERMINAL_ERROR_CODES:
        return True
    if isinstance(error, dict) and _is_terminal_payload(error, depth + 1):
        return True

    description = payload.get('error_description')
    if isinstance(description, str):
        description = description.lower()
        if any(fragment in description for fragment in TERMINAL_DESCRIPTION_FRAGMENTS):
            return True

    message = payload.get('message')
    if isinstance(message, str) and any(code in message.lower() for code in TERMINAL_ERROR_CODES):
        return True

    for key in NESTED_PAYLOAD_KEYS:
        nested = payload.get(key)
        if isinstance(nested, dict) and _is_terminal_payload(nested, depth + 1):
            return True

    return False


def _is_terminal_exception(error):
    if any(code in str(error).lower() for code in TERMINAL_ERROR_CODES):
        return True

    # google.auth.exceptions.RefreshError(message, response_data)
    for arg in getattr(error, 'args', ()):
        if isinstance(arg, dict) and _is_terminal_payload(arg):
            return True

    response = getattr(error, 'response', None)
    if isinstance(response, dict):
        return _is_terminal_payload(response)
    if response is not None and hasattr(response, 'json'):
        try:
            body = response.json()
        except ValueError:
            return False
        return _is_terminal_payload(body)

    return False


def classify_refresh_error(error):
    """
    Normalize a failed refresh into TERMINAL or TRANSIENT.

    Recognized terminal shapes:
        {'error': 'invalid_grant', ...}
        {'response': {'data': {'error': 'invalid_grant'}}} and the other
            nestings under NESTED_PAYLOAD_KEYS
        any error_description containing "expired or revoked"
        exceptions whose message mentions invalid_grant, whose args carry
            one of the bodies above (google-auth RefreshError), or whose
            .response JSON is one of the bodies above (requests HTTPError)

    Everything else - connection errors, timeouts, rate limits, 5xx,
    unparseable bodies - is transient.

    Args:
        error: Raw provider response body (dict), or the exception raised
               while calling the provider

    Returns:
        str: TERMINAL or TRANSIENT
    """
    if isinstance(error, BaseException):
        return TERMINAL if _is_terminal_exception(error) else TRANSIENT
    return TERMINAL if _is_terminal_payload(error) else TRANSIENT


class TokenManager:
    def __init__(self, client_id, client_secret, token_uri=DEFAULT_TOKEN_URI,
                 skew_buffer_ms=DEFAULT_SKEW_BUFFER_MS, timeout=10, clock=None, http=None):
        """
        Args:
            client_id: Google OAuth client ID
            client_secret: Google OAuth client secret
            token_uri: Token endpoint used for refresh_token grants
            skew_buffer_ms: Tokens expiring within this margin are refreshed early
            timeout: Seconds to wait on the token endpoint
            clock: Callable returning milliseconds since epoch (defaults to wall clock)
            http: Object with a requests-compatible post() (defaults to requests)
        """
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_uri = token_uri
        self.skew_buffer_ms = skew_buffer_ms
        self.timeout = timeout
        self.clock = clock or now_ms
        self.http = http or requests

    def is_fresh(self, session, now=None):
        if not session.access_token or session.access_token_expires_at is None:
            return False
        if now is None:
            now = self.clock()
        return now < session.access_token_expires_at - self.skew_buffer_ms

    def get_valid_access_token(self, session):
        """
        Return an access token good for at least skew_buffer_ms.

        Raises:
            SessionInvalid: Session was already dead (no network call made)
            NoRefreshToken / InvalidGrant: Terminal refresh failure
            TransientRefreshFailure: Refresh failed but may work next time
        """
        if session.is_invalid:
            raise SessionInvalid('Session was invalidated; sign in again')

        if self.is_fresh(session):
            return session.access_token

        self.refresh(session)
        return session.access_token

    def refresh(self, session):
        """Exchange the refresh token for a new access token, updating session in place"""
        if not session.refresh_token:
            print("❌ No refresh token stored - session cannot be refreshed")
            session.invalidate()
            raise NoRefreshToken('No refresh token available')

        print("🔄 Access token stale, refreshing...")
        try:
            response = self.http.post(
                self.token_uri,
                data={
                    'client_id': self.client_id,
                    'client_secret': self.client_secret,
                    'grant_type': 'refresh_token',
                    'refresh_token': session.refresh_token,
                },
                headers={'Content-Type': 'application/x-www-form-urlencoded'},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            return self._fail(session, e, f"Token endpoint unreachable: {e}")

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not response.ok or not isinstance(payload, dict) or 'access_token' not in payload:
            detail = payload if payload is not None else f"HTTP {response.status_code}"
            return self._fail(session, payload or {}, f"Token refresh failed: {detail}")

        access_token = payload['access_token']
        if not isinstance(access_token, str) or not access_token:
            return self._fail(session, payload, "Token refresh returned an empty access token")

        try:
            expires_in = int(payload.get('expires_in', DEFAULT_EXPIRES_IN))
        except (TypeError, ValueError):
            expires_in = 0
        if expires_in <= 0:
            return self._fail(session, payload, f"Token refresh returned a bad expires_in: {payload.get('expires_in')!r}")

        # Session is only touched once the whole response is known to be usable
        refreshed_at = self.clock()
        session.access_token = access_token
        session.access_token_expires_at = refreshed_at + expires_in * 1000
        session.refresh_token = payload.get('refresh_token') or session.refresh_token
        session.last_error = None
        print(f"✅ Access token refreshed (valid for {expires_in}s)")
        return session

    def _fail(self, session, error, message):
        if classify_refresh_error(error) == TERMINAL:
            print("❌ Refresh token expired or revoked - forcing sign-out")
            session.invalidate()
            raise InvalidGrant(message)

        print(f"⚠️  {message} (will retry on next request)")
        session.last_error = TRANSIENT_ERROR
        raise TransientRefreshFailure(message)
