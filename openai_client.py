"""
OpenAI Client for generating email replies (supports OpenAI and Moonshot)
"""
import os
from openai import OpenAI


TONE_INSTRUCTIONS = {
    'casual': 'Use a casual, friendly tone with informal language',
    'professional': 'Use a professional, business-appropriate tone',
    'formal': 'Use a formal, official tone with proper business etiquette',
}

SENTIMENT_INSTRUCTIONS = {
    'positive': 'Respond positively, agreeing or accepting the request where appropriate',
    'neutral': 'Respond neutrally and professionally, providing information or clarification',
    'negative': 'Politely decline or express concerns about the request',
}

LENGTH_INSTRUCTIONS = {
    'short': 'Keep the response brief and to the point (2-3 sentences)',
    'medium': 'Provide a balanced response with appropriate detail (1-2 paragraphs)',
    'detailed': 'Provide a comprehensive response with full details and explanations',
}

DEFAULT_SUBJECT = 'Re: Your Email'


def _instruction(table, kind, value):
    try:
        return table[value]
    except KeyError:
        raise ValueError(f"Unknown {kind} '{value}'. Expected one of: {', '.join(table)}")


def build_reply_prompt(email_content, email_subject, sender_name, sender_email,
                       tone='professional', sentiment='positive', length='medium', custom_instructions=''):
    """Build the reply prompt; raises ValueError for unknown tone/sentiment/length"""
    tone_text = _instruction(TONE_INSTRUCTIONS, 'tone', tone)
    sentiment_text = _instruction(SENTIMENT_INSTRUCTIONS, 'sentiment', sentiment)
    length_text = _instruction(LENGTH_INSTRUCTIONS, 'length', length)
    extra = f"\n- Additional Instructions: {custom_instructions}" if custom_instructions else ''

    return f"""You are an AI assistant helping to generate professional email replies. Please create a response to the following email:

FROM: {sender_name} ({sender_email})
SUBJECT: {email_subject}

EMAIL CONTENT:
{email_content}

REPLY REQUIREMENTS:
- Tone: {tone_text}
- Sentiment: {sentiment_text}
- Length: {length_text}{extra}

Please format your response as follows:
SUBJECT: [Reply subject line starting with "Re: "]
BODY:
[The email body content]

Make sure the reply:
1. Addresses the main points from the original email
2. Maintains the requested tone and sentiment
3. Includes appropriate greetings and closing
4. Is contextually relevant and helpful
5. Follows professional email etiquette"""


def parse_generated_reply(generated_reply):
    """
    Split model output into subject and body

    Expects "SUBJECT: ..." then "BODY:" followed by the body. Falls back to
    first paragraph as subject, then to a generic subject with the whole text.
    """
    subject = ''
    body_lines = []
    in_body = False

    for line in generated_reply.split('\n'):
        if line.startswith('SUBJECT:') and not in_body:
            subject = line[len('SUBJECT:'):].strip()
        elif line.startswith('BODY:') and not in_body:
            in_body = True
            remainder = line[len('BODY:'):].strip()
            if remainder:
                body_lines.append(remainder)
        elif in_body:
            body_lines.append(line)

    body = '\n'.join(body_lines).strip()

    # Fallback parsing if the format isn't followed exactly
    if not subject and not body:
        parts = generated_reply.split('\n\n')
        if len(parts) >= 2:
            first = parts[0].strip()
            if first.lower().startswith('re:'):
                first = first[3:].strip()
            subject = f"Re: {first}"
            body = '\n\n'.join(parts[1:]).strip()
        else:
            subject = DEFAULT_SUBJECT
            body = generated_reply.strip()

    return {
        'subject': subject or DEFAULT_SUBJECT,
        'body': body or generated_reply.strip(),
    }


class OpenAIClient:
    def __init__(self, api_key=None, model=None):
        # Moonshot exposes an OpenAI-compatible API
        use_moonshot = os.getenv('USE_MOONSHOT', 'false').lower() == 'true'

        if use_moonshot:
            self.api_key = api_key or os.getenv('MOONSHOT_API_KEY') or os.getenv('OPENAI_API_KEY')
            if not self.api_key:
                raise ValueError("Moonshot API key not found. Please set MOONSHOT_API_KEY or OPENAI_API_KEY environment variable.")
            self.client = OpenAI(
                base_url="https://api.moonshot.cn/v1",
                api_key=self.api_key
            )
            self.model = model or "kimi-k2-thinking"
            print("✓ Moonshot (Kimi) client initialized")
        else:
            self.api_key = api_key or os.getenv('OPENAI_API_KEY')
            if not self.api_key:
                raise ValueError("OpenAI API key not found. Please set OPENAI_API_KEY environment variable.")
            self.client = OpenAI(api_key=self.api_key)
            self.model = model or os.getenv('OPENAI_MODEL', 'gpt-4o-mini')
            print("✓ OpenAI client initialized")

    def generate_reply(self, email_content, email_subject, sender_name, sender_email,
                       tone='professional', sentiment='positive', length='medium', custom_instructions=''):
        """
        Generate a reply draft

        Returns:
            dict: {'subject': ..., 'body': ...}

        Raises:
            ValueError: Unknown tone, sentiment or length
            openai.OpenAIError: The API call failed
        """
        prompt = build_reply_prompt(
            email_content=email_content,
            email_subject=email_subject,
            sender_name=sender_name,
            sender_email=sender_email,
            tone=tone,
            sentiment=sentiment,
            length=length,
            custom_instructions=custom_instructions,
        )

        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": "You are a helpful email assistant that writes email replies."},
                {"role": "user", "content": prompt}
            ],
            temperature=0.7,
            max_tokens=800
        )

        reply_text = (response.choices[0].message.content or '').strip()
        return parse_generated_reply(reply_text)
