"""
Gmail Client for listing, reading, labelling and replying to emails
"""
import base64
import re
import html
from email.mime.text import MIMEText
from email.header import decode_header
from datetime import datetime, timezone
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build


# Gmail API scopes
# Note: Google automatically adds 'openid' scope when requesting userinfo scopes
SCOPES = [
    'openid',
    'https://www.googleapis.com/auth/userinfo.email',
    'https://www.googleapis.com/auth/userinfo.profile',
    'https://www.googleapis.com/auth/gmail.readonly',
    'https://www.googleapis.com/auth/gmail.send',
    'https://www.googleapis.com/auth/gmail.modify',
]

MAX_BODY_CHARS = 5000


def decode_header_value(value):
    """Decode RFC 2047 encoded headers (like =?UTF-8?B?...?=)"""
    if not value or not value.strip():
        return ''
    try:
        decoded_parts = decode_header(value)
        decoded_str = ''.join([
            part[0].decode(part[1] or 'utf-8', errors='replace') if isinstance(part[0], bytes) else part[0]
            for part in decoded_parts
        ])
        return html.unescape(decoded_str).strip()
    except (LookupError, ValueError) as e:
        print(f"Error decoding header value: {str(e)}")
        return value.strip()


def get_header(headers, name):
    """Case-insensitive header lookup on a Gmail payload header list"""
    name = name.lower()
    for header in headers or []:
        if header.get('name', '').lower() == name:
            return decode_header_value(header.get('value', ''))
    return ''


def decode_body_data(data):
    try:
        return base64.urlsafe_b64decode(data).decode('utf-8')
    except UnicodeDecodeError:
        return base64.urlsafe_b64decode(data).decode('latin-1', errors='ignore')


def html_to_text(content):
    """Crude HTML to text - strip tags and collapse whitespace"""
    if not content:
        return ''
    text = re.sub(r'<(script|style)[^>]*>.*?</\1>', ' ', content, flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r'<[^>]*>', ' ', text)
    return re.sub(r'\s+', ' ', html.unescape(text)).strip()


def extract_bodies(payload):
    """
    Extract both plain text and HTML bodies from payload.
    Returns: (body_plain, body_html)
    """
    body_plain = ''
    body_html = ''

    mime_type = payload.get('mimeType', '')
    data = payload.get('body', {}).get('data')
    if data:
        if mime_type == 'text/html':
            body_html = decode_body_data(data)
        else:
            # Unknown single-part type - treat as plain text fallback
            body_plain = decode_body_data(data)

    for part in payload.get('parts', []):
        # Nested multi-part (e.g., alternative)
        if 'parts' in part:
            p_plain, p_html = extract_bodies(part)
            if p_plain and not body_plain:
                body_plain = p_plain
            if p_html and not body_html:
                body_html = p_html
            continue

        part_data = part.get('body', {}).get('data')
        if not part_data or part.get('filename'):
            continue

        part_type = part.get('mimeType', '')
        if part_type == 'text/plain' and not body_plain:
            body_plain = decode_body_data(part_data)
        elif part_type == 'text/html' and not body_html:
            body_html = decode_body_data(part_data)

    return body_plain, body_html


def extract_attachments(payload):
    """Walk the MIME tree and list attachments (metadata only, no download)"""
    attachments = []

    def walk(part):
        body = part.get('body', {})
        if part.get('filename') and body.get('attachmentId'):
            attachments.append({
                'filename': part['filename'],
                'mimeType': part.get('mimeType') or 'application/octet-stream',
                'size': body.get('size', 0),
                'attachmentId': body['attachmentId'],
            })
        for child in part.get('parts', []):
            walk(child)

    walk(payload)
    return attachments


def find_attachment_part(payload, attachment_id):
    """Return the MIME part carrying attachment_id, or None"""
    if payload.get('body', {}).get('attachmentId') == attachment_id:
        return payload
    for child in payload.get('parts', []):
        found = find_attachment_part(child, attachment_id)
        if found:
            return found
    return None


def internal_date_to_iso(internal_date):
    """Gmail internalDate (ms since epoch, as a string) -> ISO 8601"""
    try:
        timestamp = int(internal_date) / 1000
    except (TypeError, ValueError):
        timestamp = datetime.now(timezone.utc).timestamp()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def build_reply_message(to_email, subject, body, in_reply_to=None, references=None):
    """
    Build a base64url raw message for users.messages.send

    Body newlines become <br> since the message is sent as text/html.
    """
    message = MIMEText(body.replace('\n', '<br>'), 'html', 'utf-8')
    message['To'] = to_email
    message['Subject'] = subject
    if in_reply_to:
        message['In-Reply-To'] = in_reply_to
        message['References'] = references or in_reply_to
    return base64.urlsafe_b64encode(message.as_bytes()).decode('utf-8').rstrip('=')


class GmailClient:
    def __init__(self, access_token):
        """
        Initialize Gmail client with an access token

        Args:
            access_token: Valid OAuth access token (from TokenManager)
        """
        creds = Credentials(token=access_token)
        self.service = build('gmail', 'v1', credentials=creds, cache_discovery=False)

    def list_emails(self, max_results=10, query='in:inbox'):
        """
        List messages matching query with summary details

        Returns:
            tuple: (list of email dicts, Gmail's resultSizeEstimate)
        """
        print(f"📬 Fetching up to {max_results} emails (q={query})...")
        results = self.service.users().messages().list(
            userId='me',
            q=query,
            maxResults=max_results
        ).execute()

        messages = results.get('messages', [])
        if not messages:
            return [], 0

        emails = []
        for msg in messages:
            message = self.service.users().messages().get(
                userId='me',
                id=msg['id'],
                format='full'
            ).execute()
            emails.append(self._summarize_message(message))

        print(f"✅ Fetched {len(emails)} emails")
        return emails, results.get('resultSizeEstimate', 0)

    def _summarize_message(self, message):
        payload = message.get('payload', {})
        headers = payload.get('headers', [])
        label_ids = message.get('labelIds', []) or []

        body_plain, body_html = extract_bodies(payload)
        body = body_plain or html_to_text(body_html)

        return {
            'id': message['id'],
            'gmailId': message['id'],
            'threadId': message.get('threadId'),
            'subject': get_header(headers, 'Subject'),
            'from': get_header(headers, 'From'),
            'to': get_header(headers, 'To'),
            'body': body[:MAX_BODY_CHARS],
            'snippet': html.unescape(message.get('snippet', '')),
            'isRead': 'UNREAD' not in label_ids,
            'isImportant': 'IMPORTANT' in label_ids,
            'receivedAt': internal_date_to_iso(message.get('internalDate')),
            'labels': label_ids,
        }

    def get_email(self, message_id):
        """Get full details of one email, including attachments and thread length"""
        message = self.service.users().messages().get(
            userId='me',
            id=message_id,
            format='full'
        ).execute()

        payload = message.get('payload', {})
        headers = payload.get('headers', [])
        label_ids = message.get('labelIds', []) or []

        body_plain, body_html = extract_bodies(payload)
        # If no plain text, convert HTML to text as fallback
        body = body_plain or html_to_text(body_html)

        thread_length = 1
        if message.get('threadId'):
            thread = self.service.users().threads().get(
                userId='me',
                id=message['threadId'],
                format='minimal'
            ).execute()
            thread_length = len(thread.get('messages', [])) or 1

        return {
            'id': message['id'],
            'gmailId': message['id'],
            'threadId': message.get('threadId'),
            'subject': get_header(headers, 'Subject'),
            'from': get_header(headers, 'From'),
            'to': get_header(headers, 'To'),
            'cc': get_header(headers, 'Cc'),
            'bcc': get_header(headers, 'Bcc'),
            'replyTo': get_header(headers, 'Reply-To'),
            'body': body,
            'htmlBody': body_html,
            'snippet': html.unescape(message.get('snippet', '')),
            'isRead': 'UNREAD' not in label_ids,
            'isImportant': 'IMPORTANT' in label_ids,
            'isStarred': 'STARRED' in label_ids,
            'receivedAt': internal_date_to_iso(message.get('internalDate')),
            'labels': label_ids,
            'attachments': extract_attachments(payload),
            'threadLength': thread_length,
            'messageId': get_header(headers, 'Message-ID'),
            'references': get_header(headers, 'References'),
            'inReplyTo': get_header(headers, 'In-Reply-To'),
        }

    def modify_email(self, message_id, mark_as_read=None, star=None, archive=False, delete=False):
        """
        Update labels on an email

        Args:
            mark_as_read: True removes UNREAD, False adds it, None leaves it
            star: True adds STARRED, False removes it, None leaves it
            archive: Remove from INBOX
            delete: Move to trash
        """
        add_labels = []
        remove_labels = []

        if mark_as_read is not None:
            (remove_labels if mark_as_read else add_labels).append('UNREAD')
        if star is not None:
            (add_labels if star else remove_labels).append('STARRED')
        if archive:
            remove_labels.append('INBOX')

        if add_labels or remove_labels:
            self.service.users().messages().modify(
                userId='me',
                id=message_id,
                body={'addLabelIds': add_labels, 'removeLabelIds': remove_labels}
            ).execute()
            print(f"🏷️  Updated labels on {message_id}: +{add_labels} -{remove_labels}")

        if delete:
            self.service.users().messages().trash(userId='me', id=message_id).execute()
            print(f"🗑️  Moved {message_id} to trash")

        return True

    def get_attachment(self, message_id, attachment_id):
        """
        Download an attachment

        Returns:
            tuple: (bytes, filename, mime_type) or None if Gmail has no data for it
        """
        attachment = self.service.users().messages().attachments().get(
            userId='me',
            messageId=message_id,
            id=attachment_id
        ).execute()

        data = attachment.get('data')
        if not data:
            return None

        message = self.service.users().messages().get(
            userId='me',
            id=message_id,
            format='full'
        ).execute()
        part = find_attachment_part(message.get('payload', {}), attachment_id) or {}

        filename = part.get('filename') or 'attachment'
        mime_type = part.get('mimeType') or 'application/octet-stream'
        return base64.urlsafe_b64decode(data), filename, mime_type

    def send_reply(self, to_email, subject, body, thread_id=None, in_reply_to=None, references=None):
        """
        Send a reply email

        Args:
            to_email: Recipient address
            subject: Subject line ("Re: " is added if missing)
            body: Plain text body
            thread_id: Gmail thread ID to keep the reply in the conversation
            in_reply_to: Message-ID header of the email being answered

        Returns:
            dict: Gmail's sent message resource (id, threadId, labelIds)
        """
        if subject and not subject.lower().startswith('re:'):
            subject = f"Re: {subject}"

        send_message = {'raw': build_reply_message(to_email, subject, body, in_reply_to, references)}
        if thread_id:
            send_message['threadId'] = thread_id

        result = self.service.users().messages().send(
            userId='me',
            body=send_message
        ).execute()
        print(f"📤 Reply sent (message {result.get('id')})")
        return result
