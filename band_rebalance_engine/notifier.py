import logging
import time

import requests


def _append_site(settings: dict, message: str) -> str:
    url = settings.get("site_url") or settings.get("site", {}).get("url")
    if not url or url in message:
        return message
    return f"{message} | site: {url}"


def send_telegram(bot_token: str, chat_id: str, text: str, parse_mode: str = "Markdown") -> bool:
    if not bot_token or not chat_id:
        return False
    url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
    try:
        resp = requests.post(url, data={"chat_id": chat_id, "text": text, "parse_mode": parse_mode}, timeout=5)
        if not resp.ok:
            logging.warning("telegram send failed: %s", resp.text)
            return False
        return True
    except requests.RequestException as e:
        logging.warning("telegram send error: %s", e)
        return False


def send_discord(webhook: str, text: str) -> bool:
    if not webhook:
        return False
    try:
        resp = requests.post(webhook, json={"content": text}, timeout=5)
        if resp.status_code == 429:
            # rate limited: wait and retry once
            retry_after = resp.json().get("retry_after", 1)
            logging.warning("Discord rate limited. Retrying after %s seconds...", retry_after)
            time.sleep(float(retry_after) + 0.1)
            resp = requests.post(webhook, json={"content": text}, timeout=5)
        if not resp.ok:
            logging.warning("discord send failed: %s", resp.text)
            return False
        return True
    except requests.RequestException:
        logging.exception("discord send failed")
        return False


def maybe_notify(settings: dict, message: str) -> bool:
    """Discord first, Telegram as fallback. No-op when neither channel is enabled."""
    if not isinstance(settings, dict):
        return False
    message = _append_site(settings, message)

    dc = settings.get("discord", {}) or {}
    if dc.get("enabled") and dc.get("webhook"):
        if send_discord(dc["webhook"], message):
            return True

    tg = settings.get("telegram", {}) or {}
    if tg.get("enabled"):
        return send_telegram(tg.get("token"), tg.get("chat_id"), message)
    return False
