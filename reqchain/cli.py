"""reqchain CLI - scriptable HTTP requests, sequences, collections and variables."""

import functools
import logging
import sys

import click
import yaml

from reqchain.errors import ReqchainError, ValidationError

TOOL_HELP = """\
reqchain - scriptable HTTP client for API testing.

\b
EXAMPLES
────────
  reqchain request https://api.dev/users --info --assert status=200
  reqchain request api.dev/users -f "items[] | {id, name}"
  reqchain request https://api.dev/login -X POST -d '{"user":"a"}' \\
      --extract token=json.token --save auth.login
  reqchain run auth:login --assert "json.token ~ /^ey/"
  reqchain sequence auth:login users:list --bearer "{{sequence.token}}"

\b
VARIABLES
─────────
  {{key}} reads the global scope, {{scope.key}} any other scope:
  env (environment and .env files), runtime (this invocation's
  extractions), sequence (extractions inside a sequence), filter,
  and every scope saved with `reqchain set scope.key=value`.

\b
CONFIG
──────
  -c path, then .reqchain.yaml in CWD, then ~/.reqchain/config.yaml.
  defaults: timeout_ms, follow_redirects, insecure, headers,
  assert_format, script_timeout_ms, env_file, collections_dir, vars_file
"""

# View flag -> view name, highest precedence first.
VIEW_FLAGS = (
    ("debug", "debug"),
    ("tls", "tls"),
    ("connection", "connection"),
    ("info", "info"),
    ("size", "size"),
    ("raw", "raw"),
    ("show_headers", "headers"),
)

logger = logging.getLogger("reqchain")


class ClickHandler(logging.Handler):
    """Route reqchain log records to stderr through click."""

    def emit(self, record):
        try:
            click.echo(f"{record.levelname}: {self.format(record)}", err=True)
        except Exception:  # noqa: BLE001 - logging must never raise
            self.handleError(record)


def configure_logging(verbose: bool) -> None:
    for handler in list(logger.handlers):
        if isinstance(handler, ClickHandler):
            logger.removeHandler(handler)
    logger.addHandler(ClickHandler())
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def _fail(error: Exception) -> None:
    message = error.format() if isinstance(error, ReqchainError) else str(error)
    click.echo(f"ERROR: {message}", err=True)
    sys.exit(1)


def handle_errors(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ReqchainError as e:
            _fail(e)

    return wrapper


class AppContext:
    """Config, env and stores for one invocation. Built once by the group."""

    def __init__(self, config_file=None, env_profile=None, env_file=None):
        from reqchain.core import (
            CollectionStore,
            VariableStore,
            config_path_value,
            load_config,
            load_env,
            resolve_collections_dir,
            resolve_config_path,
            resolve_vars_path,
        )

        self.config = load_config(resolve_config_path(config_file))
        self.defaults = self.config.get("defaults", {})
        configured_env = config_path_value(self.config, "env_file")
        self.env = load_env(env_file or (str(configured_env) if configured_env else None), profile=env_profile)
        self.variables = VariableStore(resolve_vars_path(self.config))
        self.collections = CollectionStore(resolve_collections_dir(self.config))

    def scope(self):
        from reqchain.core import build_runtime_scope

        return build_runtime_scope(self.variables.load(), self.env)

    def engine(self):
        from reqchain.executor import RequestEngine
        from reqchain.hooks import DEFAULT_TIMEOUT_MS

        return RequestEngine(script_timeout_ms=int(self.defaults.get("script_timeout_ms") or DEFAULT_TIMEOUT_MS))

    def shared_options(self, flags: dict, continue_on_fail: bool = False):
        """Explicit flags first, config defaults second."""
        from reqchain.core import default_header_lines
        from reqchain.hooks import load_script_source
        from reqchain.sequence import SequenceOptions

        return SequenceOptions(
            continue_on_fail=continue_on_fail,
            auth=flags.get("auth"),
            timeout_ms=flags["timeout"] if flags.get("timeout") is not None else self.defaults.get("timeout_ms"),
            insecure=True if flags.get("insecure") else self.defaults.get("insecure"),
            follow_redirects=True if flags.get("redirect") else self.defaults.get("follow_redirects"),
            headers=default_header_lines(self.config),
            assert_format=(flags.get("assert_format") or self.defaults.get("assert_format") or "tap").lower(),
            pre_script=load_script_source(flags.get("pre_script")),
            post_script=load_script_source(flags.get("post_script")),
        )


def _remember_auth(ctx, param, value):
    """Keep whichever of --bearer/--basic appears last on the command line."""
    from reqchain.executor import Auth

    if value:
        ctx.meta["reqchain.auth"] = Auth.bearer(value) if param.name == "bearer" else Auth.basic(value)
    return value


def shared_request_options(func):
    """Flags accepted by request, run and sequence."""
    options = [
        click.option("-H", "--header", "headers", multiple=True, help='Header "Key: Value" (repeatable).'),
        click.option("-i", "--show-headers", is_flag=True, default=False, help="Print status line and headers."),
        click.option("--size", is_flag=True, default=False, help="Print body/header/total byte counts."),
        click.option("--info", is_flag=True, default=False, help="Print method, URL, status and time."),
        click.option("--raw", is_flag=True, default=False, help="Print the body exactly as received."),
        click.option("--debug", is_flag=True, default=False, help="Dump the whole response envelope."),
        click.option("--connection", is_flag=True, default=False, help="Print socket details."),
        click.option("--tls", is_flag=True, default=False, help="Print TLS details (HTTPS only)."),
        click.option("-L", "--redirect", is_flag=True, default=False, help="Follow redirects (max 4 hops)."),
        click.option("-k", "--insecure", is_flag=True, default=False, help="Skip TLS certificate verification."),
        click.option("--timeout", type=click.IntRange(min=0), default=None, help="Timeout in ms (0 = none)."),
        click.option("--extract", multiple=True, help="name=source, e.g. token=json.data.token (repeatable)."),
        click.option(
            "--assert",
            "assert_exprs",
            multiple=True,
            help='Assertion, e.g. status=200 or "json.items contains 3" (repeatable).',
        ),
        click.option(
            "--assert-format",
            type=click.Choice(["tap", "junit"], case_sensitive=False),
            default=None,
            help="Assertion report format. Default: tap.",
        ),
        click.option("--bearer", callback=_remember_auth, default=None, help="Bearer token."),
        click.option("--basic", callback=_remember_auth, default=None, help="Basic credentials user:password."),
        click.option("--pre-script", default=None, help="JavaScript hook run before sending (inline or @file)."),
        click.option("--post-script", default=None, help="JavaScript hook run after the response (inline or @file)."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def single_request_options(func):
    """Flags for commands that send exactly one request."""
    options = [
        click.option("-X", "--method", default=None, help="HTTP method. Default: GET."),
        click.option("-d", "--data", default=None, help="Request body (JSON is detected)."),
        click.option("-f", "--filter", "filter_expr", default=None, help='Filter pipeline, e.g. "items[] | {id}".'),
        click.option("--benchmark", type=click.IntRange(min=1), default=1, help="Repeat N times, print latency stats."),
        click.option("--save", default=None, help="Save the request as collection.request."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _view_from(flags: dict) -> str:
    for flag, view in VIEW_FLAGS:
        if flags.get(flag):
            return view
    return "body"


def _record_from_flags(url, flags: dict) -> dict:
    """Saved-request form of what was given on the command line."""
    record: dict = {}
    if url:
        record["url"] = url
    if flags.get("method"):
        record["method"] = flags["method"].upper()
    if flags.get("headers"):
        record["headers"] = list(flags["headers"])
    if flags.get("data") is not None:
        record["body"] = flags["data"]
    auth = flags.get("auth")
    if auth is not None:
        record[auth.kind] = auth.value
    if flags.get("timeout") is not None:
        record["timeout_ms"] = flags["timeout"]
    if flags.get("insecure"):
        record["insecure"] = True
    if flags.get("redirect"):
        record["follow_redirects"] = True
    if flags.get("extract"):
        record["extract"] = list(flags["extract"])
    if flags.get("assert_exprs"):
        record["assertions"] = list(flags["assert_exprs"])
    return record


def _emit_run(run, view: str, filter_expr=None, extract_scope: str = "runtime") -> None:
    from reqchain.benchmark import format_benchmark_summary
    from reqchain.output import format_extraction, format_response

    click.echo(format_response(run.response, view, run.filter_result if filter_expr else None))
    if run.assertions.output:
        click.echo(run.assertions.output)
    if run.extraction.printed:
        click.echo(format_extraction(run.extraction.printed, extract_scope), err=True)
    if run.benchmark is not None:
        click.echo(format_benchmark_summary(run.benchmark))


def _run_single(app: AppContext, record: dict, flags: dict) -> None:
    from dataclasses import replace

    from reqchain.runner import run_request
    from reqchain.sequence import build_step_spec, merge_rules

    options = app.shared_options(flags)
    spec = replace(build_step_spec(record, options), benchmark_runs=flags.get("benchmark") or 1)
    view = _view_from(flags)
    run_request(
        spec,
        app.scope(),
        engine=app.engine(),
        filter_expr=flags.get("filter_expr"),
        assertions=merge_rules(record.get("assertions"), None),
        assert_format=options.assert_format,
        extract=merge_rules(record.get("extract"), None),
        on_result=lambda run: _emit_run(run, view, flags.get("filter_expr")),
    )


def _save(app: AppContext, target: str, record: dict) -> None:
    if "." not in target:
        raise ValidationError(f'Invalid --save target: "{target}". Use collection.request')
    collection, name = (part.strip() for part in target.split(".", 1))
    path = app.collections.save_request(collection, name, record)
    click.echo(f"Saved {collection}:{name} to {path}", err=True)


# ── Commands ─────────────────────────────────────────────────────────────


@click.group(help=TOOL_HELP, context_settings={"max_content_width": 88})
@click.option(
    "-c",
    "--config",
    "config_file",
    default=None,
    help="Config file path. Default: .reqchain.yaml in CWD, then ~/.reqchain/config.yaml.",
)
@click.option("--env", "env_profile", default=None, help="Environment profile, e.g. dev loads .env.dev.")
@click.option("--env-file", default=None, help="Extra .env file to load.")
@click.option("--verbose", is_flag=True, default=False, help="Log redirects, hooks and benchmark runs.")
@click.version_option(package_name="reqchain")
@click.pass_context
def main(ctx, config_file, env_profile, env_file, verbose):
    configure_logging(verbose)
    try:
        ctx.obj = AppContext(config_file, env_profile, env_file)
    except ReqchainError as e:
        _fail(e)


@main.command("request")
@click.argument("url")
@single_request_options
@shared_request_options
@click.pass_context
@handle_errors
def request_cmd(ctx, url, **flags):
    """Send one request to URL."""
    app: AppContext = ctx.obj
    flags["auth"] = ctx.meta.get("reqchain.auth")
    record = _record_from_flags(url, flags)
    if flags.get("save"):
        _save(app, flags["save"], record)
    _run_single(app, record, flags)


@main.command("run")
@click.argument("target")
@click.option("--url", "url_override", default=None, help="Override the saved URL.")
@single_request_options
@shared_request_options
@click.pass_context
@handle_errors
def run_cmd(ctx, target, url_override, **flags):
    """Run a saved request: COLLECTION:REQUEST. Flags override saved fields."""
    from reqchain.core import validate_identifier
    from reqchain.sequence import merge_rules

    app: AppContext = ctx.obj
    if ":" not in target:
        raise ValidationError(f'Invalid request reference: "{target}". Use collection:request')
    collection, name = (part.strip() for part in target.split(":", 1))
    validate_identifier(collection, "collection name")
    validate_identifier(name, "request name")

    flags["auth"] = ctx.meta.get("reqchain.auth")
    saved = app.collections.read_request(collection, name)
    overrides = _record_from_flags(url_override, flags)
    record = {**saved, **overrides}
    if flags.get("auth") is not None:
        record.pop("bearer", None)
        record.pop("basic", None)
        record[flags["auth"].kind] = flags["auth"].value
    record["extract"] = merge_rules(saved.get("extract"), overrides.get("extract"))
    record["assertions"] = merge_rules(saved.get("assertions"), overrides.get("assertions"))
    if flags.get("save"):
        _save(app, flags["save"], record)
    _run_single(app, record, flags)


@main.command("sequence")
@click.argument("targets", nargs=-1)
@click.option("--continue-on-fail", is_flag=True, default=False, help="Keep going after a failing step.")
@shared_request_options
@click.pass_context
@handle_errors
def sequence_cmd(ctx, targets, continue_on_fail, **flags):
    """Run TARGETS in order (collection:request or URL), sharing one scope."""
    from reqchain.output import format_sequence_summary
    from reqchain.sequence import SEQUENCE_SCOPE, run_sequence

    app: AppContext = ctx.obj
    flags["auth"] = ctx.meta.get("reqchain.auth")
    options = app.shared_options(flags, continue_on_fail=continue_on_fail)
    options.headers = (*options.headers, *flags.get("headers", ()))
    options.extract = list(flags.get("extract") or [])
    options.assertions = list(flags.get("assert_exprs") or [])
    view = _view_from(flags)

    def on_step(label, run):
        click.echo(f"==> {label}", err=True)
        _emit_run(run, view, extract_scope=SEQUENCE_SCOPE)

    results = []
    try:
        run_sequence(
            list(targets),
            app.scope(),
            options,
            store=app.collections,
            engine=app.engine(),
            on_step=on_step,
            results=results,
        )
    finally:
        summary = format_sequence_summary(results)
        if summary:
            click.echo(f"\n{summary}")


@main.command("vars")
@click.argument("scope_name", required=False)
@click.pass_context
@handle_errors
def vars_cmd(ctx, scope_name):
    """Show saved variables, optionally for one scope."""
    from reqchain.output import format_variables

    app: AppContext = ctx.obj
    stored = app.variables.load()
    if scope_name:
        stored = {scope_name: stored.get(scope_name, {})}
    click.echo(format_variables(stored))


@main.command("set")
@click.argument("assignments", nargs=-1, required=True)
@click.pass_context
@handle_errors
def set_cmd(ctx, assignments):
    """Save variables: scope.key=value (bare key = global)."""
    from reqchain.core import parse_assignment

    app: AppContext = ctx.obj
    for text in assignments:
        scope_name, key, value = parse_assignment(text)
        app.variables.set(scope_name, key, value)
        click.echo(f"Set {scope_name}.{key}")


@main.command("unset")
@click.argument("keys", nargs=-1, required=True)
@click.pass_context
@handle_errors
def unset_cmd(ctx, keys):
    """Remove saved variables: scope.key (bare key = global)."""
    from reqchain.scope import parse_scoped_key

    app: AppContext = ctx.obj
    for text in keys:
        scope_name, key = parse_scoped_key(text)
        if app.variables.unset(scope_name, key):
            click.echo(f"Unset {scope_name}.{key}")
        else:
            click.echo(f"Variable {scope_name}.{key} not found", err=True)


@main.group("collection")
def collection_group():
    """Manage saved request collections."""


@collection_group.command("create")
@click.argument("name")
@click.pass_context
@handle_errors
def collection_create(ctx, name):
    app: AppContext = ctx.obj
    if app.collections.create_collection(name):
        click.echo(f"Created collection {name}")
    else:
        click.echo(f"Collection {name} already exists")


@collection_group.command("list")
@click.pass_context
@handle_errors
def collection_list(ctx):
    app: AppContext = ctx.obj
    names = app.collections.list_collections()
    if not names:
        click.echo(f"No collections found in: {app.collections.root}")
        return
    click.echo(f"Collections from: {app.collections.root}")
    for name in names:
        click.echo(f"  {name} ({len(app.collections.list_requests(name))} requests)")


@collection_group.command("show")
@click.argument("target")
@click.pass_context
@handle_errors
def collection_show(ctx, target):
    """Show a collection's requests, or one saved request (COLLECTION:REQUEST)."""
    app: AppContext = ctx.obj
    if ":" in target:
        collection, name = (part.strip() for part in target.split(":", 1))
        record = app.collections.read_request(collection, name)
        click.echo(yaml.safe_dump(record, sort_keys=False, default_flow_style=False).rstrip())
        return
    names = app.collections.list_requests(target)
    if not names:
        click.echo(f"Collection {target} is empty")
        return
    for name in names:
        record = app.collections.read_request(target, name)
        click.echo(f"  {name:<20} {record.get('method', 'GET'):<7} {record.get('url', '')}")


@collection_group.command("save")
@click.argument("target")
@click.argument("url")
@click.option("-X", "--method", default=None, help="HTTP method. Default: GET.")
@click.option("-d", "--data", default=None, help="Request body.")
@click.option("-H", "--header", "headers", multiple=True, help='Header "Key: Value" (repeatable).')
@click.option("--extract", multiple=True, help="name=source (repeatable).")
@click.option("--assert", "assert_exprs", multiple=True, help="Assertion (repeatable).")
@click.pass_context
@handle_errors
def collection_save(ctx, target, url, **flags):
    """Save a request as COLLECTION:REQUEST without sending it."""
    app: AppContext = ctx.obj
    if ":" not in target:
        raise ValidationError(f'Invalid request reference: "{target}". Use collection:request')
    collection, name = (part.strip() for part in target.split(":", 1))
    path = app.collections.save_request(collection, name, _record_from_flags(url, flags))
    click.echo(f"Saved {collection}:{name} to {path}")


if __name__ == "__main__":
    main()
