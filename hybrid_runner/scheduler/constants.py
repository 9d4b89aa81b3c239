"""Storage keys and reserved identifiers."""

# Legacy single-task keys
CALLBACK_HANDLE_KEY = "hybrid_task_runner_callback_handle"
LOOP_INTERVAL_KEY = "hybrid_task_runner_loop_interval"
ACTIVE_STATUS_KEY = "hybrid_task_runner_active"
OVERLAP_POLICY_KEY = "hybrid_task_runner_overlap_policy"

LEGACY_KEYS = (
    CALLBACK_HANDLE_KEY,
    LOOP_INTERVAL_KEY,
    ACTIVE_STATUS_KEY,
    OVERLAP_POLICY_KEY,
)

# Multi-task keys
REGISTERED_TASKS_KEY = "hybrid_task_runner_registered_tasks"
NEXT_SLOT_ID_KEY = "hybrid_task_runner_next_alarm_id"
CALLBACK_REFS_KEY = "hybrid_task_runner_callback_refs"

# Durable work identifiers
WORK_NAME = "hybridTask"
WORK_TAG = "hybrid_runner_tag"

# Name under which the single-task API stores its record
LEGACY_TASK_NAME = "__hybrid_legacy__"
