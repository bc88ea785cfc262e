STATE_DIR_NAME = ".agent-tasks"
TASKS_DIR = "tasks"
ITERATIONS_DIR = "iterations"
WORKSPACE_DIR = "workspace"
TASK_FILE = "description.json"
COUNTER_FILE = "counter.json"
COUNTER_LOCK_FILE = "counter.lock"
CONFIG_FILE = "config.json"
ROOT_CONFIG_FILE = "agent-tasks.json"

ITERATION_FILE = "iteration.json"
ITERATION_STATUS_FILE = "status.json"
ITERATION_SUMMARY_FILE = "summary.md"
ITERATION_PLAN_FILE = "plan.md"
ITERATION_LOG_FILE = "container.log"
# Files under an iteration directory that only matter while the sandbox runs.
ITERATION_SCRATCH_FILES = (ITERATION_STATUS_FILE, ITERATION_LOG_FILE)

TASK_SCHEMA_VERSION = "1.1"
ITERATION_SCHEMA_VERSION = "1.0"
CONFIG_SCHEMA_VERSION = "1.2"
WORKFLOW_SCHEMA_VERSION = "1.0"

BRANCH_PREFIX = "agent-tasks"
CONTAINER_PREFIX = "agent-task"
CONTAINER_WORKSPACE = "/workspace"
CONTAINER_OUTPUT = "/output"
DEFAULT_AGENT_IMAGE = "ghcr.io/agent-tasks/agent:latest"
DEFAULT_SANDBOX_BACKEND = "docker"
DEFAULT_AGENT = "claude"
DEFAULT_WORKFLOW = "swe"

DEFAULT_ATTRIBUTION_TRAILER = "Co-Authored-By: agent-tasks <agent-tasks@users.noreply.github.com>"
RECENT_COMMITS_LIMIT = 5
CONFLICT_HISTORY_LIMIT = 10

# Two-letter `git status --porcelain` codes that mark an unmerged path.
CONFLICT_STATUS_CODES = frozenset({"DD", "AU", "UD", "UA", "DU", "AA", "UU"})

DEFAULT_COMMAND_TIMEOUT_SECONDS = 600
AGENT_TIMEOUT_SECONDS = 300
