#!/usr/bin/env python3
"""
Gmail Reply Assistant Web Application
Lists a user's Gmail inbox, drafts AI replies and sends them back through Gmail
"""
import io
import time
import traceback
from functools import wraps
from urllib.parse import quote

import requests
from flask import Flask, render_template, jsonify, request, redirect, url_for, session, send_file
from flask_login import LoginManager, login_user, logout_user, login_required, current_user
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from werkzeug.middleware.proxy_fix import ProxyFix

import config
from models import db, User, GmailAccount, GeneratedReply, get_or_create_email, get_user_stats
from gmail_client import GmailClient, SCOPES
from openai_client import OpenAIClient
from token_manager import (
    TokenManager, TokenSession, SessionExpiredError, TransientRefreshFailure,
    classify_refresh_error, now_ms, TERMINAL,
)

TOKEN_SESSION_KEY = 'google_token'

app = Flask(__name__)
app.config['SECRET_KEY'] = config.SECRET_KEY
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'  # Allow cookies on OAuth redirects
app.config['SQLALCHEMY_DATABASE_URI'] = config.DATABASE_URL
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SEND_EMAILS'] = config.SEND_EMAILS
app.config['MAX_EMAILS'] = config.MAX_EMAILS
app.config['MINUTES_SAVED_PER_REPLY'] = config.MINUTES_SAVED_PER_REPLY

if 'postgresql' in config.DATABASE_URL.lower():
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        'pool_pre_ping': True,  # Verify connections before using
        'pool_recycle': 300,
    }

# Trust proxy headers for HTTPS detection behind a reverse proxy
app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

db.init_app(app)
login_manager = LoginManager()
login_manager.init_app(app)
login_manager.login_view = 'login'

print(f"📧 Email sending: {'ENABLED' if config.SEND_EMAILS else 'DISABLED'}")
for missing in config.validate_config():
    print(f"⚠️  {missing} is not set - related features will fail until it is configured")


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


@login_manager.unauthorized_handler
def unauthorized():
    if request.path.startswith('/api/'):
        return jsonify({'error': 'Unauthorized'}), 401
    return redirect(url_for('login'))


_tables_created = False


@app.before_request
def create_tables():
    """Create tables on first request instead of at import time"""
    global _tables_created
    if _tables_created:
        return
    db.create_all()
    _tables_created = True


# Shared clients (lazily created)
token_manager = None
openai_client = None


def get_token_manager():
    global token_manager
    if token_manager is None:
        token_manager = TokenManager(
            client_id=config.GOOGLE_CLIENT_ID,
            client_secret=config.GOOGLE_CLIENT_SECRET,
            token_uri=config.GOOGLE_TOKEN_URI,
            skew_buffer_ms=config.TOKEN_SKEW_BUFFER_SECONDS * 1000,
            timeout=config.TOKEN_REFRESH_TIMEOUT,
        )
    return token_manager


def get_openai_client():
    """Get OpenAI client (shared across users)"""
    global openai_client
    if openai_client is None:
        openai_client = OpenAIClient()
    return openai_client


# ==================== TOKEN SESSION ====================

def load_token_session(user):
    """Access token + expiry from the Flask session, refresh token from the database"""
    account = user.gmail_account
    refresh_token = account.get_refresh_token() if account else None
    return TokenSession.from_dict(session.get(TOKEN_SESSION_KEY), refresh_token=refresh_token)


def save_token_session(user, token_session):
    """Write back whatever the token manager changed"""
    session[TOKEN_SESSION_KEY] = token_session.to_dict()
    session.modified = True

    account = user.gmail_account
    if account is None:
        return
    # Unreadable ciphertext decrypts to None, so a cleared session must also wipe the column
    stale_ciphertext = token_session.refresh_token is None and account.encrypted_refresh_token is not None
    if stale_ciphertext or account.get_refresh_token() != token_session.refresh_token:
        account.set_refresh_token(token_session.refresh_token)
        db.session.commit()
        if token_session.refresh_token is None:
            print(f"🔒 Cleared stored refresh token for user {user.id}")
        else:
            print(f"🔄 Stored rotated refresh token for user {user.id}")


def get_valid_access_token(user):
    token_session = load_token_session(user)
    try:
        return get_token_manager().get_valid_access_token(token_session)
    finally:
        save_token_session(user, token_session)


def invalidate_token_session(user):
    token_session = load_token_session(user)
    token_session.invalidate()
    save_token_session(user, token_session)


def expire_cached_access_token(user):
    """Gmail rejected the access token - make the next request refresh it"""
    token_session = load_token_session(user)
    if token_session.is_invalid:
        return
    token_session.access_token_expires_at = None
    save_token_session(user, token_session)


def auth_expired_response():
    return jsonify({
        'error': 'Authentication expired. Please sign in again.',
        'code': 'AUTH_EXPIRED'
    }), 401


def gmail_api(failure_message):
    """
    Route decorator: obtain a valid access token, build a GmailClient and pass
    it to the view, mapping every failure onto the API's JSON error contract.

        SessionExpiredError / terminal google-auth error -> 401 AUTH_EXPIRED
        TransientRefreshFailure / other RefreshError     -> 503 TRY_AGAIN
        Gmail 401/403                                    -> 401 AUTH_FAILED
        Gmail 404                                        -> 404
        anything else                                    -> 500 failure_message
    """
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            try:
                access_token = get_valid_access_token(current_user)
                gmail = GmailClient(access_token)
                return view(gmail, *args, **kwargs)
            except SessionExpiredError as e:
                print(f"🔒 [{request.path}] Session expired for user {current_user.id}: {e}")
                return auth_expired_response()
            except TransientRefreshFailure as e:
                print(f"⚠️  [{request.path}] Token refresh failed, asking client to retry: {e}")
                return jsonify({
                    'error': 'Could not reach Google right now. Please try again.',
                    'code': 'TRY_AGAIN'
                }), 503
            except RefreshError as e:
                if classify_refresh_error(e) == TERMINAL:
                    print(f"🔒 [{request.path}] Google reported revoked grant for user {current_user.id}")
                    invalidate_token_session(current_user)
                    return auth_expired_response()
                # Gmail answered 401 and the client library tried to refresh a token-only credential
                print(f"⚠️  [{request.path}] Access token rejected by Gmail: {e}")
                expire_cached_access_token(current_user)
                return jsonify({
                    'error': 'Could not reach Google right now. Please try again.',
                    'code': 'TRY_AGAIN'
                }), 503
            except HttpError as e:
                status = e.resp.status
                print(f"❌ [{request.path}] Gmail API error {status}: {e}")
                if status in (401, 403):
                    expire_cached_access_token(current_user)
                    return jsonify({
                        'error': 'Authentication failed. Please re-authenticate.',
                        'code': 'AUTH_FAILED'
                    }), 401
                if status == 404:
                    return jsonify({'error': 'Not found'}), 404
                return jsonify({'error': failure_message, 'details': str(e)}), 500
            except Exception as e:
                print(f"❌ [{request.path}] {failure_message}: {str(e)}")
                traceback.print_exc()
                return jsonify({'error': failure_message, 'details': str(e)}), 500
        return wrapper
    return decorator


# ==================== AUTHENTICATION ROUTES ====================

def get_client_config():
    return {
        'web': {
            'client_id': config.GOOGLE_CLIENT_ID,
            'client_secret': config.GOOGLE_CLIENT_SECRET,
            'auth_uri': config.GOOGLE_AUTH_URI,
            'token_uri': config.GOOGLE_TOKEN_URI,
            'redirect_uris': [config.OAUTH_REDIRECT_URI],
        }
    }


def exchange_code_for_tokens(auth_code):
    """
    Manual authorization-code exchange

    Returns:
        dict: Google's token response (access_token, expires_in, refresh_token, scope)
              or an error body ({'error': ..., 'error_description': ...})
    """
    response = requests.post(config.GOOGLE_TOKEN_URI, data={
        'code': auth_code,
        'client_id': config.GOOGLE_CLIENT_ID,
        'client_secret': config.GOOGLE_CLIENT_SECRET,
        'redirect_uri': config.OAUTH_REDIRECT_URI,
        'grant_type': 'authorization_code'
    }, timeout=config.TOKEN_REFRESH_TIMEOUT)
    return response.json()


def fetch_user_info(access_token):
    userinfo_service = build('oauth2', 'v2', credentials=Credentials(token=access_token), cache_discovery=False)
    return userinfo_service.userinfo().get().execute()


@app.route('/')
def index():
    if current_user.is_authenticated:
        return redirect(url_for('dashboard'))
    return redirect(url_for('login'))


@app.route('/login')
def login():
    if current_user.is_authenticated and not TokenSession.from_dict(session.get(TOKEN_SESSION_KEY)).is_invalid:
        return redirect(url_for('dashboard'))
    return render_template('login.html', error=request.args.get('message'))


@app.route('/login/google')
def login_google():
    """Initiate Google OAuth sign-in"""
    flow = Flow.from_client_config(get_client_config(), scopes=SCOPES, redirect_uri=config.OAUTH_REDIRECT_URI)
    authorization_url, state = flow.authorization_url(
        access_type='offline',
        include_granted_scopes='true',
        prompt='consent'
    )
    session['oauth_state'] = state
    return redirect(authorization_url)


@app.route('/oauth2callback')
def oauth2callback():
    """OAuth 2.0 callback - creates the user and a fresh token session"""
    state = session.pop('oauth_state', None)
    if not state or state != request.args.get('state'):
        print("⚠️  OAuth callback with missing or mismatched state")
        return redirect(url_for('auth_error', error='state_mismatch'))

    if request.args.get('error'):
        print(f"❌ OAuth denied: {request.args.get('error')}")
        return redirect(url_for('auth_error', error=request.args.get('error')))

    auth_code = request.args.get('code')
    if not auth_code:
        return redirect(url_for('auth_error', error='missing_code'))

    try:
        token_response = exchange_code_for_tokens(auth_code)
    except (requests.RequestException, ValueError) as e:
        print(f"❌ Token exchange request failed: {e}")
        return redirect(url_for('auth_error', error='token_exchange_failed'))

    if 'error' in token_response or 'access_token' not in token_response:
        print(f"❌ Token exchange error: {token_response.get('error_description', token_response.get('error'))}")
        return redirect(url_for('auth_error', error=token_response.get('error', 'token_exchange_failed')))

    try:
        user_info = fetch_user_info(token_response['access_token'])
    except HttpError as e:
        print(f"❌ Could not load Google profile: {e}")
        return redirect(url_for('auth_error', error='profile_unavailable'))

    email = user_info.get('email')
    if not email:
        return redirect(url_for('auth_error', error='no_email'))

    user = User.query.filter_by(email=email).first()
    if not user:
        user = User(email=email)
        db.session.add(user)
        print(f"✅ New user signed up: {email}")
    user.name = user_info.get('name')
    user.picture = user_info.get('picture')
    user.google_id = user_info.get('id')

    account = user.gmail_account
    if not account:
        account = GmailAccount(user=user)
        db.session.add(account)
    # Google only sends a refresh token on consent; keep the stored one otherwise
    if token_response.get('refresh_token'):
        account.set_refresh_token(token_response['refresh_token'])
    account.scope = token_response.get('scope')
    db.session.commit()

    # Fresh sign-in replaces any previous (possibly invalidated) token session
    token_session = TokenSession(
        access_token=token_response['access_token'],
        refresh_token=account.get_refresh_token(),
        access_token_expires_at=now_ms() + int(token_response.get('expires_in', 3600)) * 1000,
    )
    login_user(user)
    session.permanent = True
    session[TOKEN_SESSION_KEY] = token_session.to_dict()
    print(f"✅ User {user.id} signed in with Google")
    return redirect(url_for('dashboard'))


@app.route('/auth/error')
def auth_error():
    error = request.args.get('error', 'unknown')
    messages = {
        'invalid_grant': 'Google rejected the sign-in. The authorization may have expired - please try again.',
        'access_denied': 'Access to Gmail was denied. The app needs Gmail access to work.',
        'state_mismatch': 'The sign-in request could not be verified. Please try again.',
    }
    return render_template('auth_error.html', error=error,
                           message=messages.get(error, 'Sign-in failed. Please try again.')), 400


@app.route('/logout')
def logout():
    """Sign out - clears Flask-Login state and the token session"""
    user_id = current_user.id if current_user.is_authenticated else None
    logout_user()
    session.clear()
    print(f"✅ User {user_id} logged out - session cleared")

    message = request.args.get('message')
    if message:
        return redirect(url_for('login') + '?message=' + quote(message))
    return redirect(url_for('login'))


# ==================== DASHBOARD ====================

@app.route('/dashboard')
@login_required
def dashboard():
    return render_template('dashboard.html', user=current_user)


@app.route('/email/<message_id>')
@login_required
def email_page(message_id):
    return render_template('dashboard.html', user=current_user, message_id=message_id)


# ==================== API ENDPOINTS ====================

@app.route('/api/emails')
@login_required
@gmail_api('Failed to fetch emails')
def list_emails(gmail):
    try:
        max_results = int(request.args.get('maxResults', app.config['MAX_EMAILS']))
    except ValueError:
        return jsonify({'error': 'maxResults must be an integer'}), 400
    max_results = max(1, min(max_results, 100))
    query = request.args.get('q') or 'in:inbox'

    emails, total_estimate = gmail.list_emails(max_results=max_results, query=query)
    stats = {
        'unreadCount': len([e for e in emails if not e['isRead']]),
        'importantCount': len([e for e in emails if e['isImportant']]),
        'totalCount': total_estimate,
    }
    return jsonify({'emails': emails, 'stats': stats, 'totalCount': total_estimate})


@app.route('/api/emails/<message_id>', methods=['GET'])
@login_required
@gmail_api('Failed to fetch email details')
def get_email(gmail, message_id):
    return jsonify(gmail.get_email(message_id))


@app.route('/api/emails/<message_id>', methods=['PATCH'])
@login_required
@gmail_api('Failed to update email')
def update_email(gmail, message_id):
    data = request.get_json(silent=True) or {}
    gmail.modify_email(
        message_id,
        mark_as_read=data.get('markAsRead'),
        star=data.get('star'),
        archive=bool(data.get('archive')),
        delete=bool(data.get('delete')),
    )
    return jsonify({'success': True})


@app.route('/api/emails/<message_id>/attachments/<attachment_id>')
@login_required
@gmail_api('Failed to download attachment')
def download_attachment(gmail, message_id, attachment_id):
    result = gmail.get_attachment(message_id, attachment_id)
    if result is None:
        return jsonify({'error': 'Attachment not found'}), 404

    data, filename, mime_type = result
    return send_file(io.BytesIO(data), mimetype=mime_type, as_attachment=True, download_name=filename)


def split_sender(sender):
    """'Jane Doe <jane@example.com>' -> ('Jane Doe', 'jane@example.com')"""
    if sender and '<' in sender and '>' in sender:
        name = sender.split('<')[0].strip().strip('"')
        address = sender.split('<')[1].split('>')[0].strip()
        return name or address, address
    return sender or '', sender or ''


@app.route('/api/emails/<message_id>/generate-reply', methods=['POST'])
@login_required
@gmail_api('Failed to generate reply')
def generate_reply(gmail, message_id):
    data = request.get_json(silent=True) or {}
    tone = data.get('tone') or 'professional'
    sentiment = data.get('sentiment') or 'positive'
    length = data.get('length') or 'medium'
    custom_instructions = data.get('customInstructions') or ''

    email_content = data.get('emailContent')
    email_subject = data.get('emailSubject')
    sender_name = data.get('senderName')
    sender_email = data.get('senderEmail')
    thread_id = data.get('threadId')

    # Fall back to Gmail when the client didn't send the message content
    if not email_content:
        email = gmail.get_email(message_id)
        email_content = email['body']
        email_subject = email_subject or email['subject']
        thread_id = thread_id or email['threadId']
        name, address = split_sender(email['from'])
        sender_name = sender_name or name
        sender_email = sender_email or address

    try:
        reply = get_openai_client().generate_reply(
            email_content=email_content,
            email_subject=email_subject or '',
            sender_name=sender_name or '',
            sender_email=sender_email or '',
            tone=tone,
            sentiment=sentiment,
            length=length,
            custom_instructions=custom_instructions,
        )
    except ValueError as e:
        return jsonify({'success': False, 'error': str(e)}), 400

    stored_email = get_or_create_email(
        current_user.id, message_id,
        thread_id=thread_id,
        subject=email_subject,
        sender=sender_email,
        snippet=email_content[:200],
    )
    generated = GeneratedReply(
        user_id=current_user.id,
        email=stored_email,
        subject=reply['subject'],
        body=reply['body'],
        tone=tone,
        sentiment=sentiment,
        length=length,
        custom_instructions=custom_instructions or None,
    )
    db.session.add(generated)
    db.session.commit()
    print(f"✨ Generated {tone}/{sentiment}/{length} reply for user {current_user.id}")

    return jsonify({
        'success': True,
        'reply': reply,
        'replyId': generated.id,
        'generationTime': int(time.time() * 1000),
        'settings': {
            'tone': tone,
            'sentiment': sentiment,
            'length': length,
            'customInstructions': custom_instructions,
        }
    })


@app.route('/api/emails/<message_id>/send-reply', methods=['POST'])
@login_required
def send_reply(message_id):
    if not app.config['SEND_EMAILS']:
        return jsonify({
            'success': False,
            'error': 'Email sending is disabled. Set SEND_EMAILS=true in .env'
        }), 403
    return _send_reply(message_id)


@gmail_api('Failed to send reply')
def _send_reply(gmail, message_id):
    data = request.get_json(silent=True) or {}
    to_email = data.get('to')
    subject = data.get('subject')
    body = data.get('body')
    thread_id = data.get('threadId')

    missing_fields = [name for name, value in (('to', to_email), ('subject', subject), ('body', body)) if not value]
    if missing_fields:
        return jsonify({'success': False, 'error': f'Missing required fields: {", ".join(missing_fields)}'}), 400

    _, to_address = split_sender(to_email)
    result = gmail.send_reply(to_address, subject, body, thread_id=thread_id, in_reply_to=data.get('inReplyTo'))

    reply = None
    if data.get('replyId'):
        reply = GeneratedReply.query.filter_by(id=data['replyId'], user_id=current_user.id).first()
    if reply is None:
        reply = GeneratedReply(
            user_id=current_user.id,
            email=get_or_create_email(current_user.id, message_id, thread_id=thread_id),
            subject=subject,
            body=body,
        )
        db.session.add(reply)
    else:
        # Keep what was actually sent, not the original draft
        reply.subject = subject
        reply.body = body
    reply.mark_sent()
    db.session.commit()

    return jsonify({
        'success': True,
        'messageId': result.get('id'),
        'threadId': result.get('threadId'),
    })


@app.route('/api/stats')
@login_required
def get_stats():
    try:
        return jsonify(get_user_stats(current_user.id, app.config['MINUTES_SAVED_PER_REPLY']))
    except Exception as e:
        print(f"❌ Stats error: {str(e)}")
        traceback.print_exc()
        return jsonify({'error': 'Failed to fetch stats', 'details': str(e)}), 500


if __name__ == '__main__':
    app.run(debug=True, port=5000)
