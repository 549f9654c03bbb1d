"""Shared constants for phase-runner."""

STATE_DIR_NAME = ".phase_runner"
CONFIG_FILE = "config.yaml"
CONFIG_FILE_JSON = "config.json"

DEFAULT_SESSION_TIMEOUT_SECONDS = 300.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0
DEFAULT_OPENCODE_URL = "http://localhost:4096"

# Session event types
SESSION_IDLE = "session.idle"
SESSION_ERROR = "session.error"

# Events published on a task's notification channel
PHASE_START = "phase:start"
PHASE_COMPLETE = "phase:complete"
PHASE_APPROVAL_REQUIRED = "phase:approval_required"
SESSION_CREATED = "session:created"
AGENT_ACTIVITY = "agent:activity"
STORY_START = "story:start"
STORY_COMPLETE = "story:complete"
MERGE_PR_CREATED = "merge:pr_created"
MERGE_APPROVAL_REQUIRED = "merge:approval_required"
MERGE_COMPLETED = "merge:completed"
ORCHESTRATION_START = "orchestration:start"
ORCHESTRATION_COMPLETE = "orchestration:complete"
ORCHESTRATION_CANCELLED = "orchestration:cancelled"

PHASE_APPROVAL_MODES = {"automatic", "manual"}
MERGE_METHODS = {"squash", "merge", "rebase"}
