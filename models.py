"""
Database models for Gmail Reply Assistant
"""
from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from datetime import datetime

from auth import encrypt_token, decrypt_token

db = SQLAlchemy()

REPLY_STATUS_GENERATED = 'GENERATED'
REPLY_STATUS_SENT = 'SENT'


class User(UserMixin, db.Model):
    """User signed in with Google"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(255))
    picture = db.Column(db.Text)
    google_id = db.Column(db.String(255), unique=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    gmail_account = db.relationship('GmailAccount', backref='user', uselist=False, cascade='all, delete-orphan')
    emails = db.relationship('Email', backref='user', lazy='dynamic', cascade='all, delete-orphan')
    replies = db.relationship('GeneratedReply', backref='user', lazy='dynamic', cascade='all, delete-orphan')

    def __repr__(self):
        return f'<User {self.email}>'


class GmailAccount(db.Model):
    """Google account link - holds the encrypted refresh token"""
    __tablename__ = 'gmail_accounts'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), unique=True, nullable=False)
    encrypted_refresh_token = db.Column(db.Text)
    scope = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def set_refresh_token(self, refresh_token):
        self.encrypted_refresh_token = encrypt_token(refresh_token) if refresh_token else None

    def get_refresh_token(self):
        return decrypt_token(self.encrypted_refresh_token)

    def __repr__(self):
        return f'<GmailAccount for user {self.user_id}>'


class Email(db.Model):
    """Gmail message the user generated a reply for"""
    __tablename__ = 'emails'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    gmail_id = db.Column(db.String(255), nullable=False)  # Gmail message ID
    thread_id = db.Column(db.String(255))
    subject = db.Column(db.String(500))
    sender = db.Column(db.String(255))
    snippet = db.Column(db.Text)
    received_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    replies = db.relationship('GeneratedReply', backref='email', lazy='dynamic')

    __table_args__ = (
        db.UniqueConstraint('user_id', 'gmail_id', name='uq_user_gmail_id'),
    )

    def __repr__(self):
        return f'<Email {self.gmail_id} for user {self.user_id}>'


class GeneratedReply(db.Model):
    """AI-generated reply draft and whether it was sent"""
    __tablename__ = 'generated_replies'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    email_id = db.Column(db.Integer, db.ForeignKey('emails.id'))
    subject = db.Column(db.String(500))
    body = db.Column(db.Text)
    tone = db.Column(db.String(20))  # casual, professional, formal
    sentiment = db.Column(db.String(20))  # positive, neutral, negative
    length = db.Column(db.String(20))  # short, medium, detailed
    custom_instructions = db.Column(db.Text)
    status = db.Column(db.String(20), default=REPLY_STATUS_GENERATED, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    sent_at = db.Column(db.DateTime)

    __table_args__ = (
        db.Index('idx_user_reply_status', 'user_id', 'status'),
    )

    def mark_sent(self):
        self.status = REPLY_STATUS_SENT
        self.sent_at = datetime.utcnow()

    def __repr__(self):
        return f'<GeneratedReply {self.status} for user {self.user_id}>'


def get_or_create_email(user_id, gmail_id, **fields):
    """Find the stored Email row for a Gmail message, creating it if needed (caller commits)"""
    email = Email.query.filter_by(user_id=user_id, gmail_id=gmail_id).first()
    if email:
        for key, value in fields.items():
            if value is not None:
                setattr(email, key, value)
        return email

    email = Email(user_id=user_id, gmail_id=gmail_id, **fields)
    db.session.add(email)
    return email


def get_user_stats(user_id, minutes_per_reply=3):
    """
    Usage stats for the dashboard

    Returns:
        dict: totalRepliesGenerated, repliesSent, emailsStored, timeSavedHours
    """
    total_generated = GeneratedReply.query.filter_by(user_id=user_id).count()
    replies_sent = GeneratedReply.query.filter_by(user_id=user_id, status=REPLY_STATUS_SENT).count()
    emails_stored = Email.query.filter_by(user_id=user_id).count()

    time_saved_minutes = replies_sent * minutes_per_reply
    return {
        'totalRepliesGenerated': total_generated,
        'repliesSent': replies_sent,
        'emailsStored': emails_stored,
        'timeSavedHours': round(time_saved_minutes / 60, 1),
    }
