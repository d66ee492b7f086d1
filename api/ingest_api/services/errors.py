class IngestError(Exception):
    """Base error for crawl ingestion failures."""


class AuthenticityError(IngestError):
    """Raised when a webhook signature is missing or does not match."""


class CorrelationError(IngestError):
    """Raised when a callback cannot be linked to a known crawl job."""


class ExtractionError(IngestError):
    """Raised when structured extraction from crawled pages fails."""


class DataAbsenceError(IngestError):
    """Raised when a completed crawl carries no usable results."""


class ProviderSubmissionError(IngestError):
    """Raised when the crawl provider rejects or fails a submission."""
