"""Exception types shared across the document QA core."""


class DocQAError(Exception):
    """Base class for all docqa errors."""


class ValidationError(DocQAError):
    """A query or document id is missing or malformed."""


class NotFoundError(DocQAError):
    """The document is unknown or has nothing to retrieve from."""


class ProviderError(DocQAError):
    """An embedding or generation call failed or returned garbage."""


class PersistenceError(DocQAError):
    """A write to the document store could not be published."""


class JobInProgressError(DocQAError):
    """An embedding job is already running for the document."""

    def __init__(self, document_id: str):
        super().__init__(f"Embedding job already running for document {document_id}")
        self.document_id = document_id
