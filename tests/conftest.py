import os

# Must be set before config.py is imported
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['SECRET_KEY'] = 'test-secret'
os.environ['GOOGLE_CLIENT_ID'] = 'test-client-id'
os.environ['GOOGLE_CLIENT_SECRET'] = 'test-client-secret'
os.environ['OPENAI_API_KEY'] = 'sk-test'
os.environ['SEND_EMAILS'] = 'true'

import pytest

import app as app_module
from app import TOKEN_SESSION_KEY
from models import db, User, GmailAccount
from openai_client import build_reply_prompt
from token_manager import TokenManager

NOW = 1_700_000_000_000
HOUR_MS = 3600 * 1000


class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self.payload = payload

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeTokenEndpoint:
    """Stands in for requests: returns queued responses (or raises queued exceptions)"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.calls.append({'url': url, 'data': data, 'headers': headers, 'timeout': timeout})
        result = self.responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


class FakeGmail:
    """Replaces GmailClient in route tests; records the token each instance was built with"""
    instances = []
    emails = []
    email_detail = None
    error = None

    def __init__(self, access_token):
        self.access_token = access_token
        self.modified = []
        self.sent = []
        FakeGmail.instances.append(self)

    def _maybe_fail(self):
        if FakeGmail.error is not None:
            raise FakeGmail.error

    def list_emails(self, max_results=10, query='in:inbox'):
        self._maybe_fail()
        self.list_args = (max_results, query)
        return FakeGmail.emails, len(FakeGmail.emails)

    def get_email(self, message_id):
        self._maybe_fail()
        return dict(FakeGmail.email_detail, id=message_id)

    def modify_email(self, message_id, **changes):
        self._maybe_fail()
        self.modified.append((message_id, changes))
        return True

    def get_attachment(self, message_id, attachment_id):
        self._maybe_fail()
        if attachment_id == 'missing':
            return None
        return b'%PDF-1.4 test', 'deck.pdf', 'application/pdf'

    def send_reply(self, to_email, subject, body, thread_id=None, in_reply_to=None, references=None):
        self._maybe_fail()
        self.sent.append({'to': to_email, 'subject': subject, 'body': body,
                          'thread_id': thread_id, 'in_reply_to': in_reply_to})
        return {'id': 'sent-1', 'threadId': thread_id or 'thread-new'}


class FakeOpenAI:
    def __init__(self):
        self.calls = []

    def generate_reply(self, **kwargs):
        # Same validation as the real client
        build_reply_prompt(**kwargs)
        self.calls.append(kwargs)
        return {'subject': f"Re: {kwargs['email_subject']}", 'body': 'Thanks, sounds good.'}


@pytest.fixture
def flask_app():
    app = app_module.app
    app.config.update(TESTING=True, SEND_EMAILS=True, MINUTES_SAVED_PER_REPLY=3)
    with app.app_context():
        db.drop_all()
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture
def user_id(flask_app):
    with flask_app.app_context():
        user = User(email='jane@example.com', name='Jane Doe')
        account = GmailAccount(user=user)
        account.set_refresh_token('R1')
        db.session.add_all([user, account])
        db.session.commit()
        return user.id


@pytest.fixture
def fake_gmail(monkeypatch):
    FakeGmail.instances = []
    FakeGmail.emails = []
    FakeGmail.email_detail = {
        'id': 'msg-1',
        'threadId': 'thread-1',
        'subject': 'Lunch next week?',
        'from': 'Bob Smith <bob@example.com>',
        'body': 'Are you free for lunch on Tuesday?',
        'attachments': [],
    }
    FakeGmail.error = None
    monkeypatch.setattr(app_module, 'GmailClient', FakeGmail)
    return FakeGmail


@pytest.fixture
def fake_openai(monkeypatch):
    fake = FakeOpenAI()
    monkeypatch.setattr(app_module, 'openai_client', fake)
    return fake


@pytest.fixture
def token_endpoint(monkeypatch):
    """Install a TokenManager backed by a FakeTokenEndpoint; queue responses on the returned fake"""
    endpoint = FakeTokenEndpoint()
    manager = TokenManager('test-client-id', 'test-client-secret', http=endpoint, clock=lambda: NOW)
    monkeypatch.setattr(app_module, 'token_manager', manager)
    return endpoint


def sign_in(client, user_id, access_token='A1', expires_at=NOW + HOUR_MS, last_error=None):
    with client.session_transaction() as sess:
        sess['_user_id'] = str(user_id)
        sess['_fresh'] = True
        sess[TOKEN_SESSION_KEY] = {
            'access_token': access_token,
            'access_token_expires_at': expires_at,
            'last_error': last_error,
        }


def token_state(client):
    with client.session_transaction() as sess:
        return dict(sess.get(TOKEN_SESSION_KEY) or {})
