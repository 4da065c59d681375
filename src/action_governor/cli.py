"""CLI entry point for the action governor."""

import json
import logging
import sys

import click

from action_governor.config import get_config
from action_governor.core import actions as actions_mod
from action_governor.core import retry as retry_mod
from action_governor.core import rules as rules_mod
from action_governor.core import stats as stats_mod
from action_governor.core import tasks as tasks_mod
from action_governor.core.outcomes import SqliteOutcomeReporter
from action_governor.db.engine import get_db
from action_governor.errors import ExecutionError, GovernorError
from action_governor.integrations import slack as slack_mod
from action_governor.integrations.executors import build_dispatcher


def _get_db():
    config = get_config()
    return get_db(config.db_path)


def _fail(message: str):
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def _parse_json(value: str | None, name: str):
    if value is None:
        return None
    try:
        return json.loads(value)
    except ValueError as e:
        _fail(f"{name} is not valid JSON: {e}")


def _parse_when(expr: str) -> dict:
    """Parse 'field operator value'; the value is read as JSON when it can be."""
    parts = expr.split(None, 2)
    if len(parts) != 3:
        raise click.BadParameter(f"expected 'field operator value', got {expr!r}")
    field_name, operator, raw = parts
    try:
        value = json.loads(raw)
    except ValueError:
        value = raw
    return {"field": field_name, "operator": operator, "value": value}


@click.group()
def main():
    """ag - Action Governor CLI"""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Action Commands ──────────────────────────────────────────────────────────


@main.group("action")
def action_group():
    """Review queued actions."""
    pass


@action_group.command("add")
@click.argument("action_type")
@click.option("--data", "data_json", required=True, help="Action payload as JSON")
@click.option("--risk", default="low", type=click.Choice(["low", "medium", "high"]))
@click.option("--context", "context_json", default=None, help="Context payload as JSON")
@click.option("--confidence", type=float, default=None, help="Proposer confidence 0-1")
def action_add(action_type, data_json, risk, context_json, confidence):
    """Queue a proposed action."""
    config = get_config()
    data = _parse_json(data_json, "--data")
    context = _parse_json(context_json, "--context")
    with _get_db() as db:
        try:
            action = actions_mod.create_action(
                db, action_type, data, risk, context_data=context, confidence=confidence
            )
        except GovernorError as e:
            _fail(str(e))
        click.echo(f"Queued action #{action.id} ({action.action_type})")
        click.echo(f"  Status: {action.status}")
        if action.rule_id:
            click.echo(f"  Auto-approved by rule #{action.rule_id}")
    slack_mod.notify_review_request(config.slack_bot_token, config.review_channel, action)


@action_group.command("list")
@click.option("--status", default=None, help="Filter by status")
@click.option("--type", "action_type", default=None, help="Filter by action type")
@click.option("--risk", default=None, help="Filter by risk level")
@click.option("--limit", type=int, default=None)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def action_list(status, action_type, risk, limit, json_output):
    """List queued actions."""
    with _get_db() as db:
        try:
            actions = actions_mod.list_actions(
                db, status=status, action_type=action_type, risk_level=risk, limit=limit
            )
        except GovernorError as e:
            _fail(str(e))

        if json_output:
            click.echo(json.dumps([_action_dict(a) for a in actions], indent=2))
            return

        if not actions:
            click.echo("No actions found.")
            return

        status_icons = {
            "pending": "○",
            "approved": "✓",
            "auto_approved": "⚡",
            "edited": "✎",
            "denied": "✗",
        }
        for a in actions:
            icon = status_icons.get(a.status, "?")
            executed = " [executed]" if a.executed_at else ""
            failed = " [execution failed]" if a.execution_error else ""
            click.echo(f"  {icon} #{a.id} {a.action_type} ({a.status}, {a.risk_level} risk){executed}{failed}")


@action_group.command("show")
@click.argument("action_id", type=int)
def action_show(action_id):
    """Show action details."""
    with _get_db() as db:
        action = actions_mod.get_action(db, action_id)
        if not action:
            _fail(f"Action not found: {action_id}")

        click.echo(f"Action #{action.id}: {action.action_type}")
        click.echo(f"  Status: {action.status}")
        click.echo(f"  Risk: {action.risk_level}")
        click.echo(f"  Data: {json.dumps(action.action_data)}")
        if action.context_data:
            click.echo(f"  Context: {json.dumps(action.context_data)}")
        if action.edited_data is not None:
            click.echo(f"  Edited: {json.dumps(action.edited_data)}")
        if action.user_feedback:
            click.echo(f"  Feedback: {action.user_feedback}")
        if action.rule_id:
            click.echo(f"  Rule: #{action.rule_id}")
        if action.executed_at:
            click.echo(f"  Executed: {action.executed_at}")
        if action.execution_error:
            click.echo(f"  Execution error: {action.execution_error}")

        events = actions_mod.get_action_events(db, action_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@action_group.command("approve")
@click.argument("action_id", type=int)
@click.option("--execute", is_flag=True, help="Dispatch the action right after approving")
def action_approve(action_id, execute):
    """Approve a pending action."""
    with _get_db() as db:
        try:
            actions_mod.approve_action(db, action_id)
        except GovernorError as e:
            _fail(str(e))
        click.echo(f"Approved action #{action_id}")
        if execute:
            _execute(db, action_id)


@action_group.command("deny")
@click.argument("action_id", type=int)
@click.option("--feedback", "-f", default=None, help="Why the action was denied")
def action_deny(action_id, feedback):
    """Deny a pending action."""
    with _get_db() as db:
        try:
            action = actions_mod.deny_action(
                db, action_id, feedback, reporter=SqliteOutcomeReporter(db)
            )
        except GovernorError as e:
            _fail(str(e))
        click.echo(f"Denied action #{action_id}: {action.user_feedback}")


@action_group.command("edit")
@click.argument("action_id", type=int)
@click.option("--data", "data_json", required=True, help="Edited payload as JSON")
@click.option("--execute", is_flag=True, help="Dispatch the edited action immediately")
def action_edit(action_id, data_json, execute):
    """Replace a pending action's payload."""
    data = _parse_json(data_json, "--data")
    with _get_db() as db:
        try:
            actions_mod.edit_action(
                db, action_id, data, reporter=SqliteOutcomeReporter(db)
            )
        except GovernorError as e:
            _fail(str(e))
        click.echo(f"Edited action #{action_id}")
        if execute:
            _execute(db, action_id)


@action_group.command("exec")
@click.argument("action_id", type=int)
def action_exec(action_id):
    """Dispatch an approved, auto-approved or edited action."""
    with _get_db() as db:
        _execute(db, action_id)


def _execute(db, action_id: int):
    dispatcher = build_dispatcher(get_config())
    try:
        _, result = actions_mod.execute_action(
            db, action_id, dispatcher, reporter=SqliteOutcomeReporter(db)
        )
        result.raise_for_failure()
    except ExecutionError as e:
        _fail(f"Execution failed: {e}")
    except GovernorError as e:
        _fail(str(e))
    click.echo(f"Executed action #{action_id}" + (f": {result.message}" if result.message else ""))


# ── Rule Commands ────────────────────────────────────────────────────────────


@main.group("rule")
def rule_group():
    """Manage auto-approve rules."""
    pass


@rule_group.command("add")
@click.argument("action_type")
@click.option(
    "--when", "-w", "conditions", multiple=True, required=True,
    help="Condition as 'field operator value', e.g. 'amount lt 100'. Repeat for AND.",
)
@click.option("--priority", "-p", default=3, type=int, help="P0 (first) to P6 (last)")
@click.option("--description", "-d", default=None)
@click.option("--disabled", is_flag=True, help="Create the rule disabled")
def rule_add(action_type, conditions, priority, description, disabled):
    """Create an auto-approve rule."""
    parsed = [_parse_when(c) for c in conditions]
    with _get_db() as db:
        try:
            rule = rules_mod.create_rule(
                db, action_type, parsed,
                description=description, priority=priority, enabled=not disabled,
            )
        except GovernorError as e:
            _fail(str(e))
        click.echo(f"Created rule #{rule.id}: {rules_mod.describe_rule(rule)}")


@rule_group.command("list")
@click.option("--type", "action_type", default=None, help="Filter by action type")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def rule_list(action_type, json_output):
    """List auto-approve rules in evaluation order."""
    with _get_db() as db:
        rules = rules_mod.list_rules(db, action_type=action_type)
        if json_output:
            click.echo(json.dumps([_rule_dict(r) for r in rules], indent=2))
            return
        if not rules:
            click.echo("No rules found.")
            return
        for r in rules:
            state = "on " if r.enabled else "off"
            rate = f" success={r.success_rate:.0%}" if r.success_rate is not None else ""
            click.echo(
                f"  [{state}] #{r.id} P{r.priority} {rules_mod.describe_rule(r)}"
                f" (triggered {r.trigger_count}x{rate})"
            )


@rule_group.command("enable")
@click.argument("rule_id", type=int)
def rule_enable(rule_id):
    """Enable a rule."""
    _set_enabled(rule_id, True)


@rule_group.command("disable")
@click.argument("rule_id", type=int)
def rule_disable(rule_id):
    """Disable a rule."""
    _set_enabled(rule_id, False)


def _set_enabled(rule_id: int, enabled: bool):
    with _get_db() as db:
        try:
            rules_mod.update_rule(db, rule_id, enabled=enabled)
        except GovernorError as e:
            _fail(str(e))
        click.echo(f"Rule #{rule_id} {'enabled' if enabled else 'disabled'}")


@rule_group.command("delete")
@click.argument("rule_id", type=int)
def rule_delete(rule_id):
    """Delete a rule."""
    with _get_db() as db:
        if not rules_mod.delete_rule(db, rule_id):
            _fail(f"Rule not found: {rule_id}")
        click.echo(f"Deleted rule #{rule_id}")


# ── Agent & Task Commands ────────────────────────────────────────────────────


@main.group("agent")
def agent_group():
    """Manage agents that tasks are dispatched to."""
    pass


@agent_group.command("add")
@click.argument("name")
@click.option("--role", default="worker")
@click.option("--workspace", default="default")
def agent_add(name, role, workspace):
    """Register an agent."""
    with _get_db() as db:
        try:
            agent = tasks_mod.register_agent(db, name, role=role, workspace_id=workspace)
        except GovernorError as e:
            _fail(str(e))
        click.echo(f"Registered agent: {agent.id} ({agent.name}, {agent.role})")


@agent_group.command("list")
def agent_list():
    """List agents."""
    with _get_db() as db:
        agents = tasks_mod.list_agents(db)
        if not agents:
            click.echo("No agents registered.")
            return
        for a in agents:
            click.echo(f"  {a.id}: {a.name} ({a.role}) [{a.workspace_id}]")


@main.group("task")
def task_group():
    """Manage task dispatch."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--description", "-d", default="")
@click.option("--agent", default=None, help="Assigned agent ID")
@click.option("--workspace", default="default")
def task_add(title, description, agent, workspace):
    """Create a task."""
    with _get_db() as db:
        try:
            task = tasks_mod.create_task(
                db, title, description, workspace_id=workspace, assigned_agent_id=agent
            )
        except GovernorError as e:
            _fail(str(e))
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Status: {task.status}")


@task_group.command("list")
@click.option("--status", default=None)
def task_list(status):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, status=status)
        if not tasks:
            click.echo("No tasks found.")
            return
        for t in tasks:
            agent = f" -> {t.assigned_agent_id}" if t.assigned_agent_id else ""
            error = f" [error: {t.planning_dispatch_error}]" if t.planning_dispatch_error else ""
            click.echo(f"  {t.id}: {t.title} ({t.status}){agent}{error}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            _fail(f"Task not found: {task_id}")
        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Planning complete: {'yes' if task.planning_complete else 'no'}")
        if task.assigned_agent_id:
            click.echo(f"  Agent: {task.assigned_agent_id}")
        if task.planning_dispatch_error:
            click.echo(f"  Dispatch error: {task.planning_dispatch_error}")


@task_group.command("assign")
@click.argument("task_id")
@click.argument("agent_id")
def task_assign(task_id, agent_id):
    """Assign a task to an agent."""
    with _get_db() as db:
        try:
            tasks_mod.assign_agent(db, task_id, agent_id)
        except GovernorError as e:
            _fail(str(e))
        click.echo(f"Assigned {task_id} to {agent_id}")


@task_group.command("plan-done")
@click.argument("task_id")
def task_plan_done(task_id):
    """Mark planning complete and dispatch the task."""
    with _get_db() as db:
        try:
            task, result = tasks_mod.complete_planning(
                db, task_id, build_dispatcher(get_config())
            )
        except GovernorError as e:
            _fail(str(e))
        click.echo(f"Planning complete: {task.id} ({task.status})")
        if task.planning_dispatch_error:
            _fail(f"Dispatch failed: {task.planning_dispatch_error}")


@task_group.command("retry")
@click.argument("task_id")
def task_retry(task_id):
    """Retry a failed task dispatch."""
    with _get_db() as db:
        try:
            result = retry_mod.retry_dispatch(db, task_id, build_dispatcher(get_config()))
            result.raise_for_failure()
        except ExecutionError as e:
            _fail(f"Dispatch retry failed: {e}")
        except GovernorError as e:
            _fail(str(e))
        click.echo(f"Dispatch retry successful: {task_id}")


# ── Stats & Servers ──────────────────────────────────────────────────────────


@main.command("stats")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def stats_command(json_output):
    """Show queue statistics."""
    with _get_db() as db:
        stats = stats_mod.get_queue_stats(db)
    if json_output:
        click.echo(json.dumps(stats, indent=2))
        return
    click.echo(f"Actions: {stats['total']}")
    for status, count in stats["by_status"].items():
        click.echo(f"  {status}: {count}")
    click.echo(f"Approval rate: {stats['approval_rate']:.0%}")
    click.echo(f"Executed: {stats['executed']} (failed: {stats['execution_failed']})")


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Run the JSON API."""
    from action_governor.web.app import run_server

    click.echo(f"Serving API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from action_governor.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ──────────────────────────────────────────────────────────────────


def _action_dict(action) -> dict:
    return {
        "id": action.id,
        "action_type": action.action_type,
        "status": action.status,
        "risk_level": action.risk_level,
        "action_data": action.action_data,
        "edited_data": action.edited_data,
        "rule_id": action.rule_id,
        "user_feedback": action.user_feedback,
        "execution_error": action.execution_error,
        "executed_at": action.executed_at.isoformat() if action.executed_at else None,
    }


def _rule_dict(rule) -> dict:
    return {
        "id": rule.id,
        "action_type": rule.action_type,
        "description": rules_mod.describe_rule(rule),
        "conditions": [
            {"field": c.field, "operator": c.operator, "value": c.value}
            for c in rule.conditions
        ],
        "enabled": rule.enabled,
        "priority": rule.priority,
        "trigger_count": rule.trigger_count,
        "success_rate": rule.success_rate,
    }


if __name__ == "__main__":
    main()
