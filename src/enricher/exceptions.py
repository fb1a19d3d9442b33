class EnrichmentError(Exception):
    pass


class InsufficientDataError(EnrichmentError):
    """Provider data is malformed or inconsistent; a quick retry won't fix it."""


class NoBaselineError(EnrichmentError):
    """No creator buy observed yet. Expected for young tokens, retried later."""
