"""
Configuration settings for Gmail Reply Assistant
"""
import os
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')

# Database - PostgreSQL when DATABASE_URL is set, SQLite locally
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///gmail_reply_assistant.db')
if DATABASE_URL.startswith('postgres://'):
    DATABASE_URL = DATABASE_URL.replace('postgres://', 'postgresql://', 1)

# Google OAuth Configuration
GOOGLE_CLIENT_ID = os.getenv('GOOGLE_CLIENT_ID')
GOOGLE_CLIENT_SECRET = os.getenv('GOOGLE_CLIENT_SECRET')
OAUTH_REDIRECT_URI = os.getenv('OAUTH_REDIRECT_URI', 'http://localhost:5000/oauth2callback')
GOOGLE_AUTH_URI = 'https://accounts.google.com/o/oauth2/auth'
GOOGLE_TOKEN_URI = os.getenv('GOOGLE_TOKEN_URI', 'https://oauth2.googleapis.com/token')

# Refresh access tokens this many seconds before Google says they expire
TOKEN_SKEW_BUFFER_SECONDS = int(os.getenv('TOKEN_SKEW_BUFFER_SECONDS', '300'))
TOKEN_REFRESH_TIMEOUT = float(os.getenv('TOKEN_REFRESH_TIMEOUT', '10'))

# OpenAI Configuration
OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')
OPENAI_MODEL = os.getenv('OPENAI_MODEL', 'gpt-4o-mini')
USE_MOONSHOT = os.getenv('USE_MOONSHOT', 'false').lower() == 'true'
MOONSHOT_API_KEY = os.getenv('MOONSHOT_API_KEY')

# Gmail Configuration
SEND_EMAILS = os.getenv('SEND_EMAILS', 'false').lower() == 'true'
MAX_EMAILS = int(os.getenv('MAX_EMAILS', '10'))
MAX_BODY_CHARS = 5000

# Stats
MINUTES_SAVED_PER_REPLY = int(os.getenv('MINUTES_SAVED_PER_REPLY', '3'))

REQUIRED_SETTINGS = ('GOOGLE_CLIENT_ID', 'GOOGLE_CLIENT_SECRET', 'OPENAI_API_KEY')


def validate_config():
    """Return the names of required settings that are not set"""
    return [name for name in REQUIRED_SETTINGS if not globals().get(name)]
