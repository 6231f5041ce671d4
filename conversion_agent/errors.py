"""Error taxonomy for the conversation pipeline.

Each failure class maps to a local recovery policy:

- ``KnowledgeRetrievalFailure``: serve the stale knowledge snapshot or the
  built-in defaults; never surfaced to the customer.
- ``CompletionServiceFailure``: fall back to a deterministic template reply.
- ``PersistenceFailure``: keep serving from memory, retry in the background.
- ``ValidationFailure``: reject the command with no state change.

Anything else is caught by the orchestrator and turned into a recovery
message.
"""


class ConversionAgentError(Exception):
    """Base class for every error raised by the conversation pipeline."""


class KnowledgeRetrievalFailure(ConversionAgentError):
    """The knowledge store could not be read."""


class CompletionServiceFailure(ConversionAgentError):
    """The completion service timed out, failed, or returned unusable output."""


class PersistenceFailure(ConversionAgentError):
    """A write to the persistent store failed."""


class ValidationFailure(ConversionAgentError):
    """A command was rejected because its input is invalid."""
