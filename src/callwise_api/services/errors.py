from __future__ import annotations


class PipelineError(Exception):
    """Base class for failures raised by the analysis services."""


class NotFoundError(PipelineError):
    pass


class ConfigMissingError(PipelineError):
    """No usable (active, compiled, valid) spec for a required stage."""


class ContractMissingError(PipelineError):
    """A storage or threshold contract the computation depends on is not loaded."""


class PipelineBusyError(PipelineError):
    pass


class InvalidRequestError(PipelineError):
    """Missing or malformed input to a pipeline run."""
