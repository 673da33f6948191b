"""Outbound message rendering and the mailer seam.

Provider integrations live outside this package; LoggingMailer stands in
for them by recording the send and handing back a message id.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

__all__ = ['Message', 'Mailer', 'LoggingMailer', 'render_template', 'recipient_variables']

_PLACEHOLDER = re.compile(r'{{\s*(\w+)\s*}}')


@dataclass
class Message:
    to: str
    subject: str
    body: str
    from_email: str = None
    reply_to: str = None
    tag: str = None
    metadata: dict = field(default_factory=dict)


def render_template(template: str, variables: dict) -> str:
    """Substitute {{name}} placeholders. Unknown or empty names render as ''.

    >>> render_template('Hi {{first_name}} at {{ company }}', {'first_name': 'Ada', 'company': 'ACME'})
    'Hi Ada at ACME'
    >>> render_template('Hi {{first_name}}{{missing}}', {'first_name': None})
    'Hi '
    """
    if not template:
        return ''

    def substitute(match):
        value = variables.get(match.group(1))
        return '' if value is None else str(value)

    return _PLACEHOLDER.sub(substitute, template)


def recipient_variables(recipient: dict) -> dict:
    """Personalisation values for a recipient row; custom variables win.
    """
    variables = {k: recipient.get(k) for k in ('email', 'first_name', 'last_name', 'company')}
    variables.update(recipient.get('variables') or {})
    return variables


class Mailer:
    """Delivery interface.
    """

    def send(self, message: Message) -> str:
        """Deliver one message.

        Returns
            Provider message id

        Raises
            RecipientRejected: The address was permanently refused
            DeliveryError: Transient failure, safe to retry this recipient
        """
        raise NotImplementedError


class LoggingMailer(Mailer):

    def send(self, message: Message) -> str:
        message_id = str(uuid.uuid4())
        logger.info(f'Sending {message.tag or "message"} to {message.to}: {message.subject!r} ({message_id})')
        return message_id
