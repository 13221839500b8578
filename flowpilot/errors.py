"""
Exception hierarchy for the flowpilot worker.

  FlowpilotError
    PreconditionError            — bad project definition, fails before any remote call
      ProjectAlreadyRunningError — at most one active job per process
    SettingsConfigurationError   — settings hard gate exhausted (fatal)
    ItemCountGateError           — too few images to build videos from (fatal)
    WorkspaceError               — remote editor never became ready (fatal)
    GatewayError                 — action transport failed
      RemoteUnavailableError     — no remote endpoint, even after re-establishing
    ActionFailedError            — action ran but reported failure
      PolicyViolationError       — content-policy rejection survived recovery
    InvalidTransitionError       — item result asked to move backwards
    StoreError                   — persistence backend failure
    JobAbortedError              — stop requested; not an error outcome
"""


class FlowpilotError(Exception):
    """Base class for every error raised by flowpilot."""


class PreconditionError(FlowpilotError):
    pass


class ProjectAlreadyRunningError(PreconditionError):
    def __init__(self, active_project_id: str):
        self.active_project_id = active_project_id
        super().__init__(f"Another project is already running: {active_project_id}")


class SettingsConfigurationError(FlowpilotError):
    pass


class ItemCountGateError(FlowpilotError):
    pass


class WorkspaceError(FlowpilotError):
    pass


class GatewayError(FlowpilotError):
    pass


class RemoteUnavailableError(GatewayError):
    pass


class ActionFailedError(FlowpilotError):
    def __init__(self, message: str, action: str = ""):
        self.action = action
        super().__init__(message)


class PolicyViolationError(ActionFailedError):
    pass


class InvalidTransitionError(FlowpilotError):
    pass


class StoreError(FlowpilotError):
    pass


class JobAbortedError(FlowpilotError):
    """Raised at a suspension point after stop was requested."""
