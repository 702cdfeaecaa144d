"""Scheduler module manifest: tool definitions."""

from shared.schemas.tools import ModuleManifest, ToolDefinition, ToolParameter

_USER_ID = ToolParameter(
    name="user_id",
    type="string",
    description="The user ID (injected by orchestrator).",
    required=False,
)

_RUN_AT = ToolParameter(
    name="run_at",
    type="string",
    description=(
        "When to run, for one-time jobs. ISO 8601 UTC datetime like "
        "'2026-01-31T20:00:00Z'. Must be in the future. Omit when using cron_expression."
    ),
    required=False,
)

_CRON = ToolParameter(
    name="cron_expression",
    type="string",
    description=(
        "Cron schedule for recurring jobs, evaluated in the given timezone, e.g. "
        "'0 9 * * 1' for 9am every Monday. Five fields (minute hour day month weekday) "
        "or six with a leading seconds field. Omit when using run_at."
    ),
    required=False,
)

_TIMEZONE = ToolParameter(
    name="timezone",
    type="string",
    description="IANA timezone name, e.g. 'America/New_York'. Defaults to the user's zone.",
    required=False,
)

_CHANNEL = ToolParameter(
    name="preferred_channel",
    type="string",
    description="Where to deliver notifications, e.g. 'app', 'email', 'chat'. Default: 'app'.",
    required=False,
)

_JOB_ID = ToolParameter(
    name="job_id",
    type="string",
    description="UUID of the scheduled job.",
)

MANIFEST = ModuleManifest(
    module_name="scheduler",
    description=(
        "Scheduled jobs for the assistant: one-time and recurring reminders, "
        "scheduled agent tasks that start a new conversation, and follow-ups "
        "on tasks. Schedules are evaluated in the user's timezone."
    ),
    tools=[
        ToolDefinition(
            name="scheduler.create_reminder",
            description=(
                "Set a reminder for the user. Use run_at for a one-time reminder or "
                "cron_expression for a recurring one (exactly one of the two)."
            ),
            parameters=[
                ToolParameter(name="title", type="string", description="What to remind the user about."),
                ToolParameter(
                    name="message",
                    type="string",
                    description="Message to send when the reminder fires. Defaults to the title.",
                    required=False,
                ),
                _RUN_AT,
                _CRON,
                _TIMEZONE,
                _CHANNEL,
                ToolParameter(
                    name="task_id",
                    type="string",
                    description="Link to an existing task ID.",
                    required=False,
                ),
                ToolParameter(
                    name="project_id",
                    type="string",
                    description="Link to an existing project ID.",
                    required=False,
                ),
                _USER_ID,
            ],
            required_permission="user",
        ),
        ToolDefinition(
            name="scheduler.create_agent_task",
            description=(
                "Schedule the assistant to carry out an instruction later. Each run "
                "starts a new conversation and sends the user the results. Use run_at "
                "for one run or cron_expression for a recurring task."
            ),
            parameters=[
                ToolParameter(name="title", type="string", description="Name of the scheduled task."),
                ToolParameter(
                    name="instruction",
                    type="string",
                    description="What the assistant should do when the task runs.",
                ),
                _RUN_AT,
                _CRON,
                _TIMEZONE,
                _CHANNEL,
                ToolParameter(
                    name="task_id",
                    type="string",
                    description="Link to an existing task ID.",
                    required=False,
                ),
                ToolParameter(
                    name="project_id",
                    type="string",
                    description="Link to an existing project ID.",
                    required=False,
                ),
                _USER_ID,
            ],
            required_permission="user",
        ),
        ToolDefinition(
            name="scheduler.create_follow_up",
            description=(
                "Schedule a follow-up to check back on a task at a specific time. "
                "Use when waiting for external events like email replies. A note is "
                "added to the task's comments."
            ),
            parameters=[
                ToolParameter(name="task_id", type="string", description="The ID of the task to follow up on."),
                ToolParameter(
                    name="reason",
                    type="string",
                    description="Why you need to follow up (e.g. 'waiting for email reply').",
                ),
                ToolParameter(
                    name="check_at",
                    type="string",
                    description="When to check back (ISO 8601 datetime, e.g. '2026-01-15T10:00:00Z').",
                ),
                ToolParameter(
                    name="instruction",
                    type="string",
                    description="Specific instruction for what to do when following up.",
                    required=False,
                ),
                _USER_ID,
            ],
            required_permission="user",
        ),
        ToolDefinition(
            name="scheduler.list_jobs",
            description=(
                "List scheduled jobs (reminders, agent tasks, follow-ups, recurring jobs), "
                "soonest first."
            ),
            parameters=[
                ToolParameter(
                    name="status",
                    type="string",
                    description="Filter by status. Default: 'active'. Use 'all' for every job.",
                    required=False,
                    enum=["active", "paused", "completed", "cancelled", "all"],
                ),
                ToolParameter(
                    name="job_kind",
                    type="string",
                    description="Filter by kind of job.",
                    required=False,
                    enum=["reminder", "one_time", "recurring", "follow_up"],
                ),
                ToolParameter(
                    name="limit",
                    type="integer",
                    description="Maximum number of jobs to return (default: 50).",
                    required=False,
                ),
                _USER_ID,
            ],
            required_permission="user",
        ),
        ToolDefinition(
            name="scheduler.get_job",
            description="Get a scheduled job with its recent run history.",
            parameters=[_JOB_ID, _USER_ID],
            required_permission="user",
        ),
        ToolDefinition(
            name="scheduler.cancel_job",
            description="Cancel a scheduled job (reminder, follow-up, or recurring job).",
            parameters=[_JOB_ID, _USER_ID],
            required_permission="user",
        ),
        ToolDefinition(
            name="scheduler.pause_or_resume",
            description=(
                "Pause an active job or resume a paused one. A resumed recurring job "
                "continues at its next future occurrence."
            ),
            parameters=[
                _JOB_ID,
                ToolParameter(
                    name="desired_status",
                    type="string",
                    description="'paused' to pause, 'active' to resume.",
                    enum=["active", "paused"],
                ),
                _USER_ID,
            ],
            required_permission="user",
        ),
        ToolDefinition(
            name="scheduler.update_schedule",
            description=(
                "Change when a job runs: a new run_at, a new cron_expression, or a new "
                "timezone. The next run time is recomputed."
            ),
            parameters=[_JOB_ID, _RUN_AT, _CRON, _TIMEZONE, _USER_ID],
            required_permission="user",
        ),
        ToolDefinition(
            name="scheduler.update_job",
            description="Rename a scheduled job or change its description.",
            parameters=[
                _JOB_ID,
                ToolParameter(name="title", type="string", description="New title.", required=False),
                ToolParameter(
                    name="description",
                    type="string",
                    description="New description.",
                    required=False,
                ),
                _USER_ID,
            ],
            required_permission="user",
        ),
    ],
)
