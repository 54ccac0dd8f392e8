from flask import current_app, has_app_context

from logs import get_logger

logger = get_logger(__name__)


class Notifier:
    """Outbound notification channel (email, SMS, push)."""

    def send(self, recipient, subject, body):
        raise NotImplementedError


class LogNotifier(Notifier):
    """Default channel: writes the message to the log instead of sending it."""

    def __init__(self):
        self.sent = []

    def send(self, recipient, subject, body):
        self.sent.append({'recipient': recipient, 'subject': subject, 'body': body})
        logger.info('notification_sent', recipient=recipient, subject=subject)


def dispatch(recipient, subject, body):
    """Best effort. Failures are logged and never reach the caller."""
    if not recipient or not has_app_context():
        return False
    notifier = current_app.extensions.get('notifier')
    if notifier is None:
        return False
    try:
        notifier.send(recipient, subject, body)
    except Exception:
        logger.exception('notification_failed', recipient=recipient, subject=subject)
        return False
    return True
