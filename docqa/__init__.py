"""Document question answering over uploaded documents.

The library does not configure logging on import. Applications call
``docqa.log.configure_logging()`` once at their entry point, before building a
``docqa.documents.DocumentService``::

    from docqa.documents import DocumentService
    from docqa.log import configure_logging

    configure_logging()
    service = DocumentService()
"""
