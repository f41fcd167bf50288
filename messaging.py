"""Outreach text drafting (Gemini) and WhatsApp delivery.

Drafting is best-effort: callers always get a string back.
"""
import logging
import os
import re
from datetime import datetime
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

RENEWAL_REMINDER = 'RENEWAL_REMINDER'
WELCOME = 'WELCOME'
RETENTION_OFFER = 'RETENTION_OFFER'
MESSAGE_KINDS = (RENEWAL_REMINDER, WELCOME, RETENTION_OFFER)

FALLBACK_MESSAGE = "Hey! Just a reminder about your gym membership. See you soon! 💪"
FALLBACK_TIP = "Consistency is key to progress."

GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


def _context_line(kind: str, expiry_date: datetime | None) -> str:
    if kind == RENEWAL_REMINDER:
        when = expiry_date.strftime('%d %b %Y') if expiry_date else 'soon'
        return f"Their membership expires on {when}. Remind them to renew."
    if kind == WELCOME:
        return "They just joined! Welcome them to the gym family."
    return "Offer them a 10% discount if they renew within 24 hours."


def build_message_prompt(kind: str, member_name: str, expiry_date: datetime | None = None) -> str:
    if kind not in MESSAGE_KINDS:
        raise ValueError(f"unknown message kind: {kind}")
    return (
        "Act as a professional and friendly gym manager.\n"
        f'Write a short, engaging WhatsApp message for a member named "{member_name}".\n\n'
        f"Context:\n{_context_line(kind, expiry_date)}\n\n"
        "Requirements:\n"
        "- Include emojis.\n"
        "- Keep it under 50 words.\n"
        "- Don't include subject lines or quotes."
    )


def generate_text(prompt: str) -> tuple[bool, str]:
    api_key = os.getenv('GEMINI_API_KEY')
    if not api_key:
        return False, 'Gemini configuration missing (GEMINI_API_KEY)'
    model = os.getenv('GEMINI_MODEL', 'gemini-2.0-flash')
    headers = {'x-goog-api-key': api_key, 'Content-Type': 'application/json'}
    payload = {'contents': [{'parts': [{'text': prompt}]}]}
    try:
        r = requests.post(GEMINI_URL.format(model=model), headers=headers, json=payload, timeout=20)
    except requests.RequestException as e:
        return False, f'request error: {e}'
    if not 200 <= r.status_code < 300:
        return False, f"{r.status_code}: {r.text[:200]}"
    try:
        parts = r.json()['candidates'][0]['content']['parts']
        text = ''.join(p.get('text', '') for p in parts).strip()
    except (ValueError, KeyError, IndexError, TypeError):
        return False, 'unexpected response body'
    if not text:
        return False, 'empty response'
    return True, text


def draft_message(kind: str, member_name: str, expiry_date: datetime | None = None) -> str:
    ok, text = generate_text(build_message_prompt(kind, member_name, expiry_date))
    if not ok:
        logger.warning("Message draft failed (%s), using fallback: %s", kind, text)
        return FALLBACK_MESSAGE
    return text


def draft_tip(days_active: int) -> str:
    prompt = (
        "Give me one single, powerful, and scientific workout tip for someone who has "
        f"been working out for {days_active} days. Keep it short (max 1 sentence)."
    )
    ok, text = generate_text(prompt)
    if not ok:
        logger.warning("Tip draft failed, using fallback: %s", text)
        return FALLBACK_TIP
    return text


def normalize_phone(phone: str) -> str:
    """Digits only, prefixed with the default country code."""
    phone = re.sub(r'\D', '', phone or '')
    if not phone:
        return ''
    default_cc = os.getenv('WHATSAPP_DEFAULT_COUNTRY_CODE', '91')
    if phone.startswith('0'):
        phone = default_cc + phone[1:]
    elif len(phone) <= 10:
        phone = default_cc + phone
    return phone


def whatsapp_link(phone: str, text: str) -> str:
    return f"https://wa.me/{normalize_phone(phone)}?text={quote(text)}"


def send_whatsapp_text(to_phone: str, text: str) -> tuple[bool, str | dict]:
    token = os.getenv('WHATSAPP_TOKEN')
    phone_id = os.getenv('WHATSAPP_PHONE_NUMBER_ID')
    if not token or not phone_id:
        return False, 'WhatsApp configuration missing (token/phone id)'
    url = f"https://graph.facebook.com/v20.0/{phone_id}/messages"
    headers = {'Authorization': f'Bearer {token}', 'Content-Type': 'application/json'}
    payload = {'messaging_product': 'whatsapp', 'to': to_phone, 'type': 'text', 'text': {'preview_url': False, 'body': text}}
    try:
        r = requests.post(url, headers=headers, json=payload, timeout=20)
    except requests.RequestException as e:
        return False, f'request error: {e}'
    try:
        js = r.json()
    except ValueError:
        js = {'text': r.text}
    ok = 200 <= r.status_code < 300
    return ok, (js if ok else f"{r.status_code}: {js}")
