from autoflow.records.models import AppUser, Client, Invoice, KilometerEntry, Notification, Quote, TimeEntry
from autoflow.records.repository import (
    ClientRepository,
    InvoiceRepository,
    KilometerEntryRepository,
    NotificationRepository,
    QuoteRepository,
    RecordRepository,
    TimeEntryRepository,
    UserRepository,
)
from autoflow.records.service import RecordService, record_service

__all__ = [
    "AppUser",
    "Client",
    "Invoice",
    "KilometerEntry",
    "Notification",
    "Quote",
    "TimeEntry",
    "RecordRepository",
    "ClientRepository",
    "InvoiceRepository",
    "KilometerEntryRepository",
    "NotificationRepository",
    "QuoteRepository",
    "TimeEntryRepository",
    "UserRepository",
    "RecordService",
    "record_service",
]
