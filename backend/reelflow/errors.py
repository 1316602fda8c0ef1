"""Error taxonomy for the orchestrator.

Item-level errors (subclasses of ItemError) are recorded on the item they
belong to and never propagate to sibling items. Document-level errors are
raised to the calling operation.
"""


class ReelflowError(Exception):
    """Base class for all orchestrator errors."""


class ItemError(ReelflowError):
    """Failure of a single work item; recorded on the item as its error text."""


class SubmissionError(ItemError):
    """Provider rejected the request (non-2xx or malformed response)."""


class PollingTimeout(ItemError):
    """Polling attempts exhausted before the job reached a terminal state."""


class ProviderError(ItemError):
    """Provider reported a terminal failure for the job."""


class Cancelled(ItemError):
    """Stop signal observed mid-poll. The item is left for the caller to mark."""


class MergeError(ReelflowError):
    """Merge service failed to produce a merged video."""


class ConflictError(ReelflowError):
    """Optimistic-concurrency retries exhausted; retry the whole operation."""


class ValidationError(ReelflowError):
    """Bad index, unknown item kind or missing required field."""


class NotFoundError(ReelflowError):
    """Document does not exist."""


class InvalidStateError(ReelflowError):
    """Operation is not allowed in the document's current stage or status."""
