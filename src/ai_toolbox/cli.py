"""CLI interface for ai-toolbox."""

from __future__ import annotations

import logging
import uuid

import click

from ai_toolbox import __version__, codec
from ai_toolbox.config import SSHConnection
from ai_toolbox.errors import NotFoundError, ToolboxError, ValidationError
from ai_toolbox.events import ChangeOrigin, SyncPhase, SyncProgress
from ai_toolbox.mappings import Direction, FileMapping, default_mappings
from ai_toolbox.service import Toolbox
from ai_toolbox.store import Category
from ai_toolbox.sync import OutcomeStatus, RunStatus
from ai_toolbox.tools import TOOLS, ToolId, get_tool

ORIGIN = ChangeOrigin.CLI


def styled(text: str, **kwargs) -> str:
    return click.style(text, **kwargs)


def info(msg: str) -> None:
    click.echo(f"  {msg}")


def success(msg: str) -> None:
    click.echo(f"  {styled(msg, fg='green')}")


def warn(msg: str) -> None:
    click.echo(f"  {styled(msg, fg='yellow')}")


def error(msg: str) -> None:
    click.echo(f"  {styled(msg, fg='red')}")


def heading(msg: str) -> None:
    click.echo(f"\n  {styled(msg, bold=True)}")


class ToolboxGroup(click.Group):
    """Reports ToolboxError in red and exits with status 1."""

    def invoke(self, ctx: click.Context):
        try:
            return super().invoke(ctx)
        except ToolboxError as e:
            error(str(e))
            ctx.exit(1)


def _toolbox(ctx: click.Context) -> Toolbox:
    obj = ctx.find_root().obj
    if "toolbox" not in obj:
        obj["toolbox"] = Toolbox()
    return obj["toolbox"]


class ToolType(click.ParamType):
    name = "tool"

    def convert(self, value, param, ctx):
        if isinstance(value, ToolId):
            return value
        try:
            return get_tool(value)
        except ValidationError as e:
            self.fail(str(e), param, ctx)


TOOL = ToolType()
CATEGORIES = click.Choice([c.value for c in Category])


def _read_settings(tool: ToolId, blob: str | None, settings_file, env_file, common: bool = False):
    """Settings from ``--settings``, ``--settings-file`` or (Claude) ``--env-file``."""
    if settings_file is not None:
        blob = settings_file.read()
    if blob is not None:
        return codec.decode(tool, blob, common=common)
    if env_file is not None:
        if tool is not ToolId.CLAUDE_CODE:
            raise ValidationError("--env-file only applies to claude_code")
        return codec.ClaudeSettings(env=codec.decode_env_block(env_file.read()))
    return None


def settings_options(func):
    func = click.option(
        "--env-file", type=click.File("r"), default=None, help="Claude Code: KEY=VALUE env file."
    )(func)
    func = click.option(
        "--settings-file", type=click.File("r"), default=None, help="Read settings from a file."
    )(func)
    func = click.option("--settings", "blob", default=None, help="Settings blob (JSON; TOML for codex common).")(
        func
    )
    return func


@click.group(cls=ToolboxGroup)
@click.version_option(version=__version__, prog_name="ai-toolbox")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Manage AI coding tool providers and sync their configs over SSH."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# providers
# ---------------------------------------------------------------------------


@cli.group()
def providers() -> None:
    """Create, order and apply providers."""


@providers.command("list")
@click.argument("tool", type=TOOL)
@click.pass_context
def providers_list(ctx: click.Context, tool: ToolId) -> None:
    """List the providers of TOOL in display order."""
    tb = _toolbox(ctx)
    records = tb.list_providers(tool)
    selected = tb.stores[tool].selected_id

    heading(f"{TOOLS[tool]['display']} providers")
    if not records:
        info("(none)")
        return
    for r in records:
        marks = []
        if r.is_applied:
            marks.append(styled("applied", fg="green"))
        if r.is_disabled:
            marks.append(styled("disabled", fg="yellow"))
        if r.id == selected:
            marks.append(styled("selected", fg="cyan"))
        suffix = f"  [{', '.join(marks)}]" if marks else ""
        info(f"{r.sort_index:>3}  {styled(r.name, bold=True)}  {r.id}  ({r.category}){suffix}")
    click.echo()


@providers.command("show")
@click.argument("tool", type=TOOL)
@click.argument("provider_id")
@click.pass_context
def providers_show(ctx: click.Context, tool: ToolId, provider_id: str) -> None:
    """Print a provider and its settings blob."""
    record = _toolbox(ctx).get_provider(tool, provider_id)
    heading(record.name)
    info(f"id:        {record.id}")
    info(f"category:  {record.category}")
    info(f"applied:   {record.is_applied}")
    info(f"disabled:  {record.is_disabled}")
    for key in ("website_url", "notes", "source_provider_id"):
        value = getattr(record, key)
        if value:
            info(f"{key}: {value}")
    click.echo()
    click.echo(codec.encode(record.settings))


@providers.command("add")
@click.argument("tool", type=TOOL)
@click.argument("name")
@settings_options
@click.option("--category", type=CATEGORIES, default=Category.CUSTOM.value, show_default=True)
@click.option("--id", "provider_id", default=None, help="Use this id instead of a generated one.")
@click.option("--website-url", default=None)
@click.option("--notes", default=None)
@click.pass_context
def providers_add(
    ctx: click.Context,
    tool: ToolId,
    name: str,
    blob: str | None,
    settings_file,
    env_file,
    category: str,
    provider_id: str | None,
    website_url: str | None,
    notes: str | None,
) -> None:
    """Add a provider to TOOL."""
    settings = _read_settings(tool, blob, settings_file, env_file)
    if settings is None:
        if tool is ToolId.OPENCODE:
            raise ValidationError("opencode providers need --settings or --settings-file")
        settings = codec.settings_type(tool)()
    record = _toolbox(ctx).create_provider(
        tool,
        name,
        settings,
        category,
        provider_id,
        origin=ORIGIN,
        website_url=website_url,
        notes=notes,
    )
    success(f"Added {record.name} ({record.id})")


@providers.command("edit")
@click.argument("tool", type=TOOL)
@click.argument("provider_id")
@click.option("--name", default=None)
@settings_options
@click.option("--category", type=CATEGORIES, default=None)
@click.option("--website-url", default=None)
@click.option("--notes", default=None)
@click.pass_context
def providers_edit(
    ctx: click.Context,
    tool: ToolId,
    provider_id: str,
    name: str | None,
    blob: str | None,
    settings_file,
    env_file,
    category: str | None,
    website_url: str | None,
    notes: str | None,
) -> None:
    """Change a provider. The applied files are not rewritten."""
    settings = _read_settings(tool, blob, settings_file, env_file)
    record = _toolbox(ctx).update_provider(
        tool,
        provider_id,
        name=name,
        settings=settings,
        category=category,
        origin=ORIGIN,
        website_url=website_url,
        notes=notes,
    )
    success(f"Updated {record.name}")
    if record.is_applied:
        info("Run 'ai-toolbox providers apply' to write the change to the tool's files.")


@providers.command("rm")
@click.argument("tool", type=TOOL)
@click.argument("provider_id")
@click.pass_context
def providers_rm(ctx: click.Context, tool: ToolId, provider_id: str) -> None:
    """Delete a provider (not the applied one)."""
    _toolbox(ctx).delete_provider(tool, provider_id, origin=ORIGIN)
    success(f"Deleted {provider_id}")


@providers.command("reorder")
@click.argument("tool", type=TOOL)
@click.argument("ids", nargs=-1, required=True)
@click.pass_context
def providers_reorder(ctx: click.Context, tool: ToolId, ids: tuple[str, ...]) -> None:
    """Set the order of TOOL's providers. IDS must name every provider once."""
    _toolbox(ctx).reorder_providers(tool, list(ids), origin=ORIGIN)
    success("Reordered.")


@providers.command("select")
@click.argument("tool", type=TOOL)
@click.argument("provider_id")
@click.pass_context
def providers_select(ctx: click.Context, tool: ToolId, provider_id: str) -> None:
    """Mark a provider as selected without applying it."""
    _toolbox(ctx).select_provider(tool, provider_id, origin=ORIGIN)
    success(f"Selected {provider_id}")


@providers.command("apply")
@click.argument("tool", type=TOOL)
@click.argument("provider_id")
@click.option("--dry-run", is_flag=True, help="Print the files that would be written.")
@click.pass_context
def providers_apply(ctx: click.Context, tool: ToolId, provider_id: str, dry_run: bool) -> None:
    """Write a provider into TOOL's native config files."""
    tb = _toolbox(ctx)
    if dry_run:
        for path, text in tb.preview_config(tool, provider_id):
            heading(str(path))
            click.echo(text)
        info("(dry-run) Nothing written.")
        return
    record = tb.apply_config(tool, provider_id, origin=ORIGIN)
    success(f"Applied {record.name} to {TOOLS[tool]['display']}")


@providers.command("disable")
@click.argument("tool", type=TOOL)
@click.argument("provider_id")
@click.pass_context
def providers_disable(ctx: click.Context, tool: ToolId, provider_id: str) -> None:
    """Disable a provider so it cannot be applied."""
    _toolbox(ctx).toggle_disabled(tool, provider_id, True, origin=ORIGIN)
    success(f"Disabled {provider_id}")


@providers.command("enable")
@click.argument("tool", type=TOOL)
@click.argument("provider_id")
@click.pass_context
def providers_enable(ctx: click.Context, tool: ToolId, provider_id: str) -> None:
    """Re-enable a disabled provider."""
    _toolbox(ctx).toggle_disabled(tool, provider_id, False, origin=ORIGIN)
    success(f"Enabled {provider_id}")


# ---------------------------------------------------------------------------
# common config
# ---------------------------------------------------------------------------


@cli.group()
def common() -> None:
    """Settings merged into every apply of a tool."""


@common.command("show")
@click.argument("tool", type=TOOL)
@click.pass_context
def common_show(ctx: click.Context, tool: ToolId) -> None:
    config = _toolbox(ctx).get_common_config(tool)
    click.echo(codec.encode(config.settings))


@common.command("set")
@click.argument("tool", type=TOOL)
@settings_options
@click.pass_context
def common_set(ctx: click.Context, tool: ToolId, blob: str | None, settings_file, env_file) -> None:
    """Replace TOOL's common config."""
    settings = _read_settings(tool, blob, settings_file, env_file, common=True)
    if settings is None:
        raise ValidationError("Give --settings or --settings-file")
    _toolbox(ctx).save_common_config(tool, settings, origin=ORIGIN)
    success(f"Saved common config for {TOOLS[tool]['display']}")


# ---------------------------------------------------------------------------
# ssh
# ---------------------------------------------------------------------------


@cli.group()
def ssh() -> None:
    """Configure the SSH sync target and file mappings."""


@ssh.command("show")
@click.pass_context
def ssh_show(ctx: click.Context) -> None:
    config = _toolbox(ctx).get_ssh_config()
    heading("SSH sync")
    info(f"enabled: {styled(str(config.enabled), fg='green' if config.enabled else 'yellow')}")
    heading("Connections")
    if not config.connections:
        info("(none)")
    for conn in config.connections:
        active = styled(" (active)", fg="green") if conn.id == config.active_connection_id else ""
        info(f"{conn.id}  {conn.name}  {conn.target}:{conn.port}  [{conn.auth_method}]{active}")
    _print_mappings(config.file_mappings)
    click.echo()


def _print_mappings(mappings: list[FileMapping]) -> None:
    heading("File mappings")
    if not mappings:
        info("(none)")
    for m in mappings:
        state = "" if m.enabled else styled(" (disabled)", fg="yellow")
        info(f"{m.id:<22} {Direction(m.direction).value:<13} {m.local_path} -> {m.remote_path}{state}")


def _set_enabled(ctx: click.Context, enabled: bool) -> None:
    tb = _toolbox(ctx)
    config = tb.get_ssh_config()
    config.enabled = enabled
    result = tb.save_ssh_config(config, origin=ORIGIN)
    success(f"SSH sync {'enabled' if enabled else 'disabled'}.")
    if result is not None:
        _print_result(result)
        if result.status is not RunStatus.SUCCESS:
            ctx.exit(1)


@ssh.command("enable")
@click.pass_context
def ssh_enable(ctx: click.Context) -> None:
    """Turn sync on (runs a full sync)."""
    _set_enabled(ctx, True)


@ssh.command("disable")
@click.pass_context
def ssh_disable(ctx: click.Context) -> None:
    _set_enabled(ctx, False)


@ssh.command("add-connection")
@click.argument("name")
@click.argument("host")
@click.option("--port", "-p", type=int, default=22, show_default=True)
@click.option("--user", "-u", "username", default="")
@click.option("--key", "private_key_path", default="", help="Private key file.")
@click.option("--passphrase", default="", help="Key passphrase.")
@click.option("--password", default="", help="Use password auth with this password.")
@click.option("--id", "connection_id", default=None)
@click.option("--use/--no-use", "make_active", default=True, help="Make it the active connection.")
@click.pass_context
def ssh_add_connection(
    ctx: click.Context,
    name: str,
    host: str,
    port: int,
    username: str,
    private_key_path: str,
    passphrase: str,
    password: str,
    connection_id: str | None,
    make_active: bool,
) -> None:
    """Save a connection. HOST may be file:///dir to sync into a local directory."""
    tb = _toolbox(ctx)
    config = tb.get_ssh_config()
    conn = SSHConnection(
        id=connection_id or uuid.uuid4().hex[:12],
        name=name,
        host=host,
        port=port,
        username=username,
        auth_method="password" if password else "key",
        private_key_path=private_key_path,
        password=password,
        passphrase=passphrase,
        sort_order=len(config.connections),
    )
    config.connections.append(conn)
    if make_active:
        config.active_connection_id = conn.id
    tb.save_ssh_config(config, origin=ORIGIN)
    success(f"Saved connection {name} ({conn.id})")


@ssh.command("use")
@click.argument("connection_id")
@click.pass_context
def ssh_use(ctx: click.Context, connection_id: str) -> None:
    """Make a saved connection the active one."""
    tb = _toolbox(ctx)
    config = tb.get_ssh_config()
    if config.get_connection(connection_id) is None:
        raise NotFoundError(f"No connection with id '{connection_id}'")
    config.active_connection_id = connection_id
    tb.save_ssh_config(config, origin=ORIGIN)
    success(f"Using {connection_id}")


@ssh.command("add-mapping")
@click.argument("mapping_id")
@click.argument("local_path")
@click.argument("remote_path")
@click.option("--name", default=None)
@click.option("--module", default="", help="claude, codex or opencode.")
@click.option(
    "--direction",
    type=click.Choice([d.value for d in Direction]),
    default=Direction.PUSH.value,
    show_default=True,
)
@click.option("--disabled", is_flag=True)
@click.pass_context
def ssh_add_mapping(
    ctx: click.Context,
    mapping_id: str,
    local_path: str,
    remote_path: str,
    name: str | None,
    module: str,
    direction: str,
    disabled: bool,
) -> None:
    """Add (or replace) a file mapping."""
    tb = _toolbox(ctx)
    config = tb.get_ssh_config()
    mapping = FileMapping(
        id=mapping_id,
        name=name or mapping_id,
        module=module,
        local_path=local_path,
        remote_path=remote_path,
        direction=Direction(direction),
        enabled=not disabled,
    )
    existing = config.get_mapping(mapping_id)
    if existing is not None:
        config.file_mappings[config.file_mappings.index(existing)] = mapping
    else:
        config.file_mappings.append(mapping)
    tb.save_ssh_config(config, origin=ORIGIN)
    success(f"Saved mapping {mapping_id}")


@ssh.command("rm-mapping")
@click.argument("mapping_id")
@click.pass_context
def ssh_rm_mapping(ctx: click.Context, mapping_id: str) -> None:
    tb = _toolbox(ctx)
    config = tb.get_ssh_config()
    mapping = config.get_mapping(mapping_id)
    if mapping is None:
        raise NotFoundError(f"No mapping with id '{mapping_id}'")
    config.file_mappings.remove(mapping)
    tb.save_ssh_config(config, origin=ORIGIN)
    success(f"Removed mapping {mapping_id}")


@ssh.command("reset-mappings")
@click.pass_context
def ssh_reset_mappings(ctx: click.Context) -> None:
    """Replace the mapping list with the built-in defaults."""
    tb = _toolbox(ctx)
    config = tb.get_ssh_config()
    config.file_mappings = default_mappings()
    tb.save_ssh_config(config, origin=ORIGIN)
    success(f"Restored {len(config.file_mappings)} default mappings")


@ssh.command("test")
@click.argument("connection_id", required=False)
@click.pass_context
def ssh_test(ctx: click.Context, connection_id: str | None) -> None:
    """Check that a connection (default: the active one) works."""
    tb = _toolbox(ctx)
    config = tb.get_ssh_config()
    conn = config.get_connection(connection_id) if connection_id else config.active_connection()
    if conn is None:
        raise NotFoundError("No such connection" if connection_id else "No active connection")
    info(f"Connecting to {conn.target}:{conn.port}...")
    remote = tb.test_connection(conn)
    success(f"Connected: {remote}")


# ---------------------------------------------------------------------------
# sync and status
# ---------------------------------------------------------------------------


_OUTCOME_COLORS = {
    OutcomeStatus.SUCCEEDED: "green",
    OutcomeStatus.SKIPPED: "cyan",
    OutcomeStatus.FAILED: "red",
    OutcomeStatus.NOT_ATTEMPTED: "yellow",
}


def _print_result(result) -> None:
    heading("Sync result")
    for o in result.outcomes:
        label = styled(o.status.value, fg=_OUTCOME_COLORS[o.status])
        extra = o.detail if o.status is OutcomeStatus.SUCCEEDED else o.reason
        info(f"{o.mapping_id:<22} {label}{f' ({extra})' if extra else ''}")
    for w in result.warnings:
        warn(f"{w.mapping_id}: {w.message}")
    click.echo()
    if result.status is RunStatus.SUCCESS:
        success("Sync finished.")
    elif result.status is RunStatus.PARTIAL_FAILURE:
        warn(f"Sync finished with {len(result.failed)} failed mapping(s).")
    else:
        error(f"Sync failed: {result.error}")


@cli.command()
@click.option(
    "--module",
    "module_filter",
    type=click.Choice(sorted({t["module"] for t in TOOLS.values()})),
    default=None,
    help="Only sync mappings of this module.",
)
@click.pass_context
def sync(ctx: click.Context, module_filter: str | None) -> None:
    """Run the enabled file mappings against the active connection."""
    tb = _toolbox(ctx)

    def observer(event) -> None:
        if isinstance(event, SyncProgress) and event.phase is SyncPhase.CONNECTING:
            info("Connecting...")
        elif isinstance(event, SyncProgress) and ctx.obj.get("verbose") and event.mapping_id:
            info(f"{event.mapping_id}: {event.phase.value} {event.bytes_transferred or ''}".rstrip())

    result = tb.sync(module_filter=module_filter, observer=observer)
    _print_result(result)
    if result.status is not RunStatus.SUCCESS:
        ctx.exit(1)


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the last sync outcome."""
    st = _toolbox(ctx).get_status()
    heading("SSH sync status")
    if st.ssh_available:
        info(f"connection: {st.active_connection_name}")
    else:
        warn("SSH sync is off or has no active connection.")
    color = {"success": "green", "error": "red"}.get(st.last_sync_status, "yellow")
    info(f"last sync:  {styled(st.last_sync_status, fg=color)}  {st.last_sync_time or ''}".rstrip())
    if st.last_sync_error:
        info(f"last error: {st.last_sync_error}")
    click.echo()


@cli.command()
@click.option("--defaults", is_flag=True, help="Show the built-in mappings instead of the saved ones.")
@click.pass_context
def mappings(ctx: click.Context, defaults: bool) -> None:
    """List file mappings."""
    tb = _toolbox(ctx)
    _print_mappings(tb.get_default_mappings() if defaults else tb.get_ssh_config().file_mappings)
    click.echo()
