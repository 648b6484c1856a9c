"""CLI interface for the task agent."""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .acp import AcpError
from .agent import TaskAgent
from .git_manager import GitError, GitManager
from .models import AgentConfig, PermissionMode, Task, TaskExecutionOptions
from .task_api import TaskAPIError
from .workflow import StepFailedError, TaskCancelledError

console = Console()


def _build_config(
    agent_command: Optional[str],
    api_url: Optional[str],
    api_key: Optional[str],
    project_id: Optional[str],
    branch_prefix: str,
    debug: bool,
) -> AgentConfig:
    config = AgentConfig(
        api_url=api_url,
        api_key=api_key,
        project_id=project_id,
        branch_prefix=branch_prefix,
        debug=debug,
    )
    if agent_command:
        config.agent_command = agent_command.split()
    return config


def api_options(func):
    func = click.option('--api-url', envvar='TASK_AGENT_API_URL', help='Task service base URL')(func)
    func = click.option('--api-key', envvar='TASK_AGENT_API_KEY', help='Task service API key')(func)
    func = click.option('--project-id', envvar='TASK_AGENT_PROJECT_ID', help='Task service project id')(func)
    return func


@click.group()
@click.version_option(package_name="task-agent")
def main():
    """Task Agent - research, plan and build tasks with a coding agent."""
    pass


@main.command()
@click.argument('task_id')
@click.option('--project-path', '-p', type=click.Path(exists=True, file_okay=False), default='.',
              help='Repository to work in')
@click.option('--title', help='Task title (runs without the task service)')
@click.option('--description', default='', help='Task description (with --title)')
@click.option('--cloud', is_flag=True, help='Answer questions automatically and never pause')
@click.option('--permission-mode', type=click.Choice([m.value for m in PermissionMode]),
              help='Permission mode for the build phase')
@click.option('--no-pr', is_flag=True, help='Do not open a pull request')
@click.option('--base', help='Base branch for the pull request')
@click.option('--agent-command', envvar='TASK_AGENT_COMMAND', help='Command that starts the ACP agent')
@click.option('--branch-prefix', default='tasks', help='Prefix for task branches')
@click.option('--debug', is_flag=True, help='Show protocol and git chatter')
@api_options
def run(
    task_id: str,
    project_path: str,
    title: Optional[str],
    description: str,
    cloud: bool,
    permission_mode: Optional[str],
    no_pr: bool,
    base: Optional[str],
    agent_command: Optional[str],
    branch_prefix: str,
    debug: bool,
    api_url: Optional[str],
    api_key: Optional[str],
    project_id: Optional[str],
):
    """Run TASK_ID through research, planning and build.

    Rerunning resumes: phases whose artifacts already exist are skipped.
    """
    config = _build_config(agent_command, api_url, api_key, project_id, branch_prefix, debug)
    options = TaskExecutionOptions(
        is_cloud_mode=cloud,
        permission_mode=PermissionMode(permission_mode) if permission_mode else None,
        create_pull_request=not no_pr,
        base_branch=base,
    )
    task_or_id = Task(id=task_id, title=title, description=description) if title else task_id

    async def _run():
        async with TaskAgent(Path(project_path), config) as agent:
            return await agent.run_task(task_or_id, options)

    try:
        result = asyncio.run(_run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except (GitError, TaskAPIError, StepFailedError, TaskCancelledError, AcpError, RuntimeError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)

    if result.halted:
        console.print(f"[yellow]Paused after '{result.halted_at}'. Rerun to continue.[/yellow]")
    if result.pr_url:
        console.print(f"[bold]Pull request:[/bold] {result.pr_url}")


@main.command('tasks')
@click.option('--repository', help='Filter by repository')
@api_options
def list_tasks(repository: Optional[str], api_url: Optional[str], api_key: Optional[str], project_id: Optional[str]):
    """List tasks from the task service."""
    config = _build_config(None, api_url, api_key, project_id, 'tasks', False)

    async def _list():
        async with TaskAgent(Path('.'), config) as agent:
            return await agent.list_tasks({"repository": repository} if repository else None)

    try:
        tasks = asyncio.run(_list())
    except (TaskAPIError, RuntimeError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)

    table = Table(title="Tasks")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Run")
    table.add_column("PR")
    for task in tasks:
        run_status = task.latest_run.status.value if task.latest_run else "-"
        table.add_row(task.id, task.title, run_status, task.existing_pr_url() or "-")
    console.print(table)


@main.command()
@click.argument('task_id')
@click.option('--project-path', '-p', type=click.Path(exists=True, file_okay=False), default='.')
@click.option('--branch-prefix', default='tasks', help='Prefix for task branches')
def branches(task_id: str, project_path: str, branch_prefix: str):
    """Show the branches and recent commits of TASK_ID."""
    git = GitManager(Path(project_path), branch_prefix=branch_prefix)
    if not git.is_git_repo():
        console.print(f"[red]Not a git repository: {escape(project_path)}[/red]")
        sys.exit(1)

    base = git.task_branch_name(task_id)
    names = [base, f"{base}-planning", f"{base}-implementation"]

    table = Table(title=f"Branches for {task_id}")
    table.add_column("Branch", style="cyan")
    table.add_column("Exists")
    table.add_column("Current")
    table.add_column("Last commit")
    for name in names:
        info = git.get_branch_info(name)
        last = "-"
        if info.exists and git.local_branch_exists(name):
            commits = git.get_recent_commits(1, ref=name)
            if commits:
                last = f"{commits[0][0][:8]} {commits[0][1]}"
        table.add_row(name, "✓" if info.exists else "-", "✓" if info.is_current_branch else "", escape(last))
    console.print(table)


@main.command()
@click.option('--project-path', '-p', type=click.Path(exists=True, file_okay=False), default='.')
@click.option('--prune', is_flag=True, help='Prune stale worktree entries first')
def worktrees(project_path: str, prune: bool):
    """List git worktrees used for concurrent tasks."""
    git = GitManager(Path(project_path))
    try:
        if prune:
            git.cleanup_stale_worktrees()
        entries = git.list_worktrees()
    except GitError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)

    table = Table(title="Worktrees")
    table.add_column("Path", style="cyan")
    table.add_column("Branch")
    table.add_column("Commit")
    for entry in entries:
        table.add_row(entry.path, entry.branch or "(detached)", (entry.commit or "")[:8])
    console.print(table)


if __name__ == "__main__":
    main()
