import pytest
import requests
from google.auth.exceptions import RefreshError

from conftest import FakeResponse, FakeTokenEndpoint, NOW, HOUR_MS
from token_manager import (
    TokenManager, TokenSession, classify_refresh_error,
    SessionExpiredError, SessionInvalid, NoRefreshToken, InvalidGrant, TransientRefreshFailure,
    TERMINAL, TRANSIENT, TERMINAL_ERROR, TRANSIENT_ERROR,
)

REVOKED = {'error': 'invalid_grant', 'error_description': 'Token has been expired or revoked.'}


def make_manager(*responses, skew_buffer_ms=5 * 60 * 1000):
    endpoint = FakeTokenEndpoint(*responses)
    manager = TokenManager('cid', 'csecret', token_uri='https://oauth2.example/token',
                           skew_buffer_ms=skew_buffer_ms, timeout=7, clock=lambda: NOW, http=endpoint)
    return manager, endpoint


def stale_session(**overrides):
    fields = dict(access_token='A1', refresh_token='R1', access_token_expires_at=NOW - 1000)
    fields.update(overrides)
    return TokenSession(**fields)


def test_fresh_token_returned_without_network_call():
    manager, endpoint = make_manager()
    session = TokenSession('A1', 'R1', NOW + HOUR_MS)

    assert manager.get_valid_access_token(session) == 'A1'
    assert endpoint.calls == []
    assert session.access_token_expires_at == NOW + HOUR_MS
    assert session.last_error is None


def test_token_inside_skew_buffer_is_refreshed():
    manager, endpoint = make_manager(FakeResponse(200, {'access_token': 'A2', 'expires_in': 3600}))
    session = TokenSession('A1', 'R1', NOW + 60 * 1000)

    assert manager.get_valid_access_token(session) == 'A2'
    assert len(endpoint.calls) == 1


def test_skew_buffer_boundary_counts_as_stale():
    manager, endpoint = make_manager(FakeResponse(200, {'access_token': 'A2', 'expires_in': 3600}),
                                     skew_buffer_ms=1000)
    session = TokenSession('A1', 'R1', NOW + 1000)

    assert manager.get_valid_access_token(session) == 'A2'
    assert len(endpoint.calls) == 1


def test_stale_token_refreshes_once_and_keeps_refresh_token():
    manager, endpoint = make_manager(FakeResponse(200, {'access_token': 'A2', 'expires_in': 3600}))
    session = stale_session()

    assert manager.get_valid_access_token(session) == 'A2'
    assert session.access_token == 'A2'
    assert session.access_token_expires_at == NOW + HOUR_MS
    assert session.refresh_token == 'R1'
    assert session.last_error is None

    assert len(endpoint.calls) == 1
    call = endpoint.calls[0]
    assert call['url'] == 'https://oauth2.example/token'
    assert call['timeout'] == 7
    assert call['data'] == {
        'client_id': 'cid',
        'client_secret': 'csecret',
        'grant_type': 'refresh_token',
        'refresh_token': 'R1',
    }


def test_missing_expiry_triggers_refresh():
    manager, endpoint = make_manager(FakeResponse(200, {'access_token': 'A2', 'expires_in': 60}))
    session = stale_session(access_token_expires_at=None)

    assert manager.get_valid_access_token(session) == 'A2'
    assert session.access_token_expires_at == NOW + 60 * 1000


def test_rotated_refresh_token_replaces_stored_one():
    manager, _ = make_manager(FakeResponse(200, {'access_token': 'A2', 'expires_in': 3600, 'refresh_token': 'R2'}))
    session = stale_session()

    manager.get_valid_access_token(session)

    assert session.refresh_token == 'R2'


def test_invalid_grant_is_terminal_and_clears_credentials():
    manager, _ = make_manager(FakeResponse(400, REVOKED))
    session = stale_session()

    with pytest.raises(InvalidGrant) as excinfo:
        manager.get_valid_access_token(session)

    assert isinstance(excinfo.value, SessionExpiredError)
    assert excinfo.value.code == 'AUTH_EXPIRED'
    assert session.access_token is None
    assert session.refresh_token is None
    assert session.access_token_expires_at is None
    assert session.last_error == TERMINAL_ERROR
    assert session.is_invalid


def test_nested_invalid_grant_is_terminal():
    manager, _ = make_manager(FakeResponse(400, {'response': {'data': {'error': 'invalid_grant'}}}))
    session = stale_session()

    with pytest.raises(InvalidGrant):
        manager.get_valid_access_token(session)
    assert session.refresh_token is None


def test_expired_or_revoked_description_is_terminal_without_code():
    manager, _ = make_manager(FakeResponse(400, {'error_description': 'Token has been expired or revoked.'}))
    session = stale_session()

    with pytest.raises(InvalidGrant):
        manager.get_valid_access_token(session)
    assert session.is_invalid


def test_connection_failure_is_transient_and_keeps_refresh_token():
    manager, endpoint = make_manager(requests.ConnectionError('Connection refused'))
    session = stale_session()

    with pytest.raises(TransientRefreshFailure) as excinfo:
        manager.get_valid_access_token(session)

    assert not isinstance(excinfo.value, SessionExpiredError)
    assert excinfo.value.code == 'TRY_AGAIN'
    assert session.refresh_token == 'R1'
    assert session.last_error == TRANSIENT_ERROR
    assert not session.is_invalid
    assert len(endpoint.calls) == 1


@pytest.mark.parametrize('response', [
    FakeResponse(429, {'error': 'rate_limit_exceeded'}),
    FakeResponse(503, ValueError('not json')),
    FakeResponse(200, {'unexpected': 'shape'}),
])
def test_other_failures_are_transient(response):
    manager, _ = make_manager(response)
    session = stale_session()

    with pytest.raises(TransientRefreshFailure):
        manager.get_valid_access_token(session)
    assert session.refresh_token == 'R1'


@pytest.mark.parametrize('body', [
    {'access_token': None, 'expires_in': 3600},
    {'access_token': '', 'expires_in': 3600},
    {'access_token': 42, 'expires_in': 3600},
    {'access_token': 'A2', 'expires_in': 'soon'},
    {'access_token': 'A2', 'expires_in': None},
    {'access_token': 'A2', 'expires_in': 0},
    {'access_token': 'A2', 'expires_in': -60},
])
def test_malformed_success_body_is_transient_and_leaves_session_untouched(body):
    manager, _ = make_manager(FakeResponse(200, body))
    session = stale_session()

    with pytest.raises(TransientRefreshFailure):
        manager.get_valid_access_token(session)

    assert session.access_token == 'A1'
    assert session.access_token_expires_at == NOW - 1000
    assert session.refresh_token == 'R1'
    assert session.last_error == TRANSIENT_ERROR


def test_missing_expires_in_defaults_to_one_hour():
    manager, _ = make_manager(FakeResponse(200, {'access_token': 'A2'}))
    session = stale_session()

    assert manager.get_valid_access_token(session) == 'A2'
    assert session.access_token_expires_at == NOW + HOUR_MS


def test_transient_failure_recovers_on_next_access():
    manager, endpoint = make_manager(
        requests.Timeout('read timed out'),
        FakeResponse(200, {'access_token': 'A2', 'expires_in': 3600}),
    )
    session = stale_session()

    with pytest.raises(TransientRefreshFailure):
        manager.get_valid_access_token(session)
    assert manager.get_valid_access_token(session) == 'A2'
    assert session.last_error is None
    assert len(endpoint.calls) == 2


def test_invalid_session_fails_without_network_call():
    manager, endpoint = make_manager(FakeResponse(400, REVOKED))
    session = stale_session()

    with pytest.raises(InvalidGrant):
        manager.get_valid_access_token(session)
    with pytest.raises(SessionInvalid):
        manager.get_valid_access_token(session)
    with pytest.raises(SessionInvalid):
        manager.get_valid_access_token(session)

    assert len(endpoint.calls) == 1


def test_invalid_session_is_not_revived_by_a_fresh_looking_token():
    manager, endpoint = make_manager()
    session = TokenSession('A1', 'R1', NOW + HOUR_MS, last_error=TERMINAL_ERROR)

    with pytest.raises(SessionInvalid):
        manager.get_valid_access_token(session)
    assert endpoint.calls == []


def test_missing_refresh_token_is_terminal_without_network_call():
    manager, endpoint = make_manager()
    session = stale_session(refresh_token=None)

    with pytest.raises(NoRefreshToken) as excinfo:
        manager.get_valid_access_token(session)

    assert isinstance(excinfo.value, SessionExpiredError)
    assert endpoint.calls == []
    assert session.is_invalid
    assert session.access_token is None


class FakeHTTPResponse:
    def __init__(self, payload):
        self.payload = payload

    def json(self):
        return self.payload


@pytest.mark.parametrize('error, expected', [
    ({'error': 'invalid_grant'}, TERMINAL),
    ({'error': 'INVALID_GRANT'}, TERMINAL),
    ({'error': {'error': 'invalid_grant'}}, TERMINAL),
    ({'response': {'error': 'invalid_grant'}}, TERMINAL),
    ({'response': {'data': {'error': 'invalid_grant'}}}, TERMINAL),
    ({'response_data': {'error_description': 'Token has been Expired or Revoked.'}}, TERMINAL),
    ({'message': 'invalid_grant'}, TERMINAL),
    ({'message': 'Refresh failed: INVALID_GRANT'}, TERMINAL),
    ({'error': 'invalid_client'}, TRANSIENT),
    ({'error': 'temporarily_unavailable'}, TRANSIENT),
    ({}, TRANSIENT),
    (None, TRANSIENT),
])
def test_classify_payloads(error, expected):
    assert classify_refresh_error(error) == expected


def test_classify_google_auth_refresh_error():
    error = RefreshError('invalid_grant: Token has been expired or revoked.', REVOKED)
    assert classify_refresh_error(error) == TERMINAL

    # Code only in the response body, not the message
    error = RefreshError('Refresh failed', {'error': 'invalid_grant'})
    assert classify_refresh_error(error) == TERMINAL


def test_classify_requests_http_error_body():
    error = requests.HTTPError('400 Client Error')
    error.response = FakeHTTPResponse({'error': 'invalid_grant'})
    assert classify_refresh_error(error) == TERMINAL

    error.response = FakeHTTPResponse({'error': 'server_error'})
    assert classify_refresh_error(error) == TRANSIENT


def test_classify_network_errors_as_transient():
    assert classify_refresh_error(requests.ConnectionError('Connection refused')) == TRANSIENT
    assert classify_refresh_error(RefreshError('The credentials do not contain the necessary fields')) == TRANSIENT


def test_token_session_dict_keeps_refresh_token_out_of_cookie():
    session = TokenSession('A1', 'R1', NOW, last_error=TRANSIENT_ERROR)

    data = session.to_dict()
    assert 'refresh_token' not in data

    restored = TokenSession.from_dict(data, refresh_token='R-db')
    assert restored.access_token == 'A1'
    assert restored.refresh_token == 'R-db'
    assert restored.access_token_expires_at == NOW
    assert restored.last_error == TRANSIENT_ERROR


def test_token_session_from_empty_dict():
    restored = TokenSession.from_dict(None, refresh_token='R1')
    assert restored.access_token is None
    assert restored.refresh_token == 'R1'
    assert not restored.is_invalid
