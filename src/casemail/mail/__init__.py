"""Mail source access.

- MailSourceClient: HTTP calls to the mail source backend
- Retriever: incremental fetch with Spam/Trash exclusion, cutoff and dedup
- Message: normalized message model

Usage:
    from casemail.mail import MailSourceClient, Retriever

    client = MailSourceClient(config.mail_source.base_url)
    result = Retriever(client, config.mail_source).fetch(watermark)
"""

from casemail.mail.client import HealthReport, MailSourceClient
from casemail.mail.models import Message, format_timestamp, parse_message_date
from casemail.mail.retriever import FetchResult, Retriever, filter_messages

__all__ = [
    "FetchResult",
    "HealthReport",
    "MailSourceClient",
    "Message",
    "Retriever",
    "filter_messages",
    "format_timestamp",
    "parse_message_date",
]
