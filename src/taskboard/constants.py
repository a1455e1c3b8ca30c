STATE_DIR_NAME = ".taskboard"
CONFIG_FILE = "config.yaml"
STORE_FILENAME = "tasks.yaml"
STORE_LOCK_FILENAME = "tasks.lock"
STORE_VERSION = 1
LOCK_TIMEOUT = 30  # seconds

MAX_TASK_LEVEL = 2
MIN_TASK_NAME_LENGTH = 3
DEFAULT_SEARCH_MIN_CHARS = 2

# Progress shown for a task with no stored progress and no children.
IN_PROGRESS_DEFAULT_PROGRESS = 50
IN_REVIEW_DEFAULT_PROGRESS = 90

DEFAULT_SORT_FIELD = "updated_at"
DEFAULT_SORT_DIRECTION = "desc"
