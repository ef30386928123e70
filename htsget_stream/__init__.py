"""Resilient streaming client for htsget tickets."""

from .background import BackgroundBufferedStream
from .client import DownloadSummary, EntryOutcome, EntryState, HtsgetDownloader
from .guards import LengthBoundedStream, NonEmptyStream
from .remote import RangeStream
from .settings import ClientSettings
from .ticket import GenomicQuery, Ticket, UrlEntry

__all__ = [
    "BackgroundBufferedStream",
    "ClientSettings",
    "DownloadSummary",
    "EntryOutcome",
    "EntryState",
    "GenomicQuery",
    "HtsgetDownloader",
    "LengthBoundedStream",
    "NonEmptyStream",
    "RangeStream",
    "Ticket",
    "UrlEntry",
]
