"""
Error taxonomy for the ingestion pipeline.

Containment rules:
- MessageProcessingError and MediaFetchError never leave the message they belong to.
- StorageError aborts the current run, which is then closed as failed.
- Nothing raised here propagates past ScrapeOrchestrator.scrape_group.
"""


class HarvesterError(Exception):
    """Base class for all pipeline errors."""


class SourceUnavailable(HarvesterError):
    """A fetch or resolve call to the source client failed."""


class NotAGroupError(HarvesterError):
    """The requested id does not refer to a multi-party group."""

    def __init__(self, group_id: str):
        super().__init__(f"Chat {group_id} is not a group")
        self.group_id = group_id


class MediaFetchError(HarvesterError):
    """Media could not be downloaded or written."""


class MessageProcessingError(HarvesterError):
    """A single message could not be normalized or stored."""

    def __init__(self, message_id: str | None, reason: str):
        super().__init__(f"Message {message_id or '<unknown>'}: {reason}")
        self.message_id = message_id


class StorageError(HarvesterError):
    """A persistence call failed."""


class RunAccountingError(StorageError):
    """A run was closed twice, or closed without ever being started."""
