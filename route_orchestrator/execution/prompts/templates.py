"""
Template name constants.

Pure constants - no I/O or file system knowledge.
"""


class Template:
    """Template name constants. Use these instead of raw strings."""

    ROUTING = "routing"
    STEP_RESPONSE = "step_response"
    DATA_EXTRACTION = "data_extraction"
    ROUTE_COMPLETION = "route_completion"
    FALLBACK_RESPONSE = "fallback_response"
