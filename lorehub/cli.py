"""Command-line interface for lorehub."""

import argparse
import json
import logging
import os
import sys

from lorehub.models import LORE_TYPES, Workspace
from lorehub.output import (
    console,
    create_realm_table,
    create_status_table,
    create_workspace_table,
    print_error,
    print_lore_item,
    print_success,
    print_sync_result,
    print_warning,
)
from lorehub.scheduler import due_workspaces, run_due_syncs
from lorehub.storage import LoreStore

try:
    import argcomplete

    ARGCOMPLETE_AVAILABLE = True
except ImportError:
    ARGCOMPLETE_AVAILABLE = False


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="lorehub",
        description="Project knowledge shared across devices through git",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log sync activity to stderr",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    workspace_completer = None
    realm_completer = None

    if ARGCOMPLETE_AVAILABLE:
        from lorehub.completions import get_realm_completer, get_workspace_completer

        workspace_completer = get_workspace_completer()
        realm_completer = get_realm_completer()

    # workspace command
    workspace_parser = subparsers.add_parser("workspace", help="Manage workspaces")
    workspace_sub = workspace_parser.add_subparsers(dest="action")

    ws_create = workspace_sub.add_parser("create", help="Create a workspace")
    ws_create.add_argument("name", help="Workspace name")
    ws_create.add_argument("--repo", help="Git remote URL to sync with")
    ws_create.add_argument("--branch", default="main", help="Sync branch (default: main)")
    ws_create.add_argument(
        "--no-sync",
        action="store_true",
        help="Create with sync disabled (enabled by default when --repo is given)",
    )
    ws_create.add_argument(
        "--no-auto-sync",
        action="store_true",
        help="Do not sync this workspace from 'sync due'",
    )
    ws_create.add_argument(
        "--interval",
        type=int,
        default=300,
        help="Auto-sync interval in seconds (default: 300)",
    )
    ws_create.add_argument("--default", action="store_true", help="Make this the default")

    workspace_sub.add_parser("list", help="List workspaces")

    ws_edit = workspace_sub.add_parser("edit", help="Change workspace settings")
    ws_name = ws_edit.add_argument("name", help="Workspace name")
    if workspace_completer:
        ws_name.completer = workspace_completer
    ws_edit.add_argument("--rename", help="New name")
    ws_edit.add_argument("--repo", help="Git remote URL to sync with")
    ws_edit.add_argument("--branch", help="Sync branch")
    sync_toggle = ws_edit.add_mutually_exclusive_group()
    sync_toggle.add_argument("--enable-sync", action="store_true", help="Enable sync")
    sync_toggle.add_argument("--disable-sync", action="store_true", help="Disable sync")
    auto_toggle = ws_edit.add_mutually_exclusive_group()
    auto_toggle.add_argument("--auto-sync", action="store_true", help="Enable auto-sync")
    auto_toggle.add_argument("--no-auto-sync", action="store_true", help="Disable auto-sync")
    ws_edit.add_argument("--interval", type=int, help="Auto-sync interval in seconds")
    ws_edit.add_argument("--default", action="store_true", help="Make this the default")

    ws_link = workspace_sub.add_parser("link", help="Add a realm to a workspace")
    ws_link_name = ws_link.add_argument("name", help="Workspace name")
    ws_link_realm = ws_link.add_argument("realm", help="Realm name or ID")
    if workspace_completer:
        ws_link_name.completer = workspace_completer
    if realm_completer:
        ws_link_realm.completer = realm_completer

    # realm command
    realm_parser = subparsers.add_parser("realm", help="Manage realms (codebases)")
    realm_sub = realm_parser.add_subparsers(dest="action")

    realm_add = realm_sub.add_parser("add", help="Register a codebase")
    realm_add.add_argument("name", help="Realm name")
    realm_add.add_argument(
        "path",
        nargs="?",
        default=None,
        help="Codebase path (default: current directory)",
    )
    realm_add.add_argument("--git-remote", help="Remote URL of the codebase")
    realm_add.add_argument(
        "--province",
        action="append",
        dest="provinces",
        help="Module or service inside the realm (repeatable)",
    )
    realm_ws = realm_add.add_argument(
        "-w",
        "--workspace",
        help="Workspace to link the realm to (default: the default workspace)",
    )
    if workspace_completer:
        realm_ws.completer = workspace_completer

    realm_sub.add_parser("list", help="List realms")

    # lore command
    lore_parser = subparsers.add_parser("lore", help="Record and browse lores")
    lore_sub = lore_parser.add_subparsers(dest="action")

    lore_add = lore_sub.add_parser("add", help="Record a lore")
    lore_add_realm = lore_add.add_argument("realm", help="Realm name or ID")
    if realm_completer:
        lore_add_realm.completer = realm_completer
    lore_add.add_argument("content", help="The knowledge to record")
    lore_add.add_argument(
        "-t",
        "--type",
        default="wisdom",
        choices=LORE_TYPES,
        help="Lore type (default: wisdom)",
    )
    lore_add.add_argument("--why", help="Why this holds")
    lore_add.add_argument(
        "--sigil",
        action="append",
        dest="sigils",
        help="Tag (repeatable)",
    )
    lore_add.add_argument("--confidence", type=int, help="Confidence 0-100")

    lore_list = lore_sub.add_parser("list", help="List a realm's lores")
    lore_list_realm = lore_list.add_argument("realm", help="Realm name or ID")
    if realm_completer:
        lore_list_realm.completer = realm_completer
    lore_list.add_argument("--all", action="store_true", help="Include archived lores")
    lore_list.add_argument("--json", action="store_true", help="Output as JSON")

    lore_archive = lore_sub.add_parser("archive", help="Archive a lore")
    lore_archive.add_argument("id", help="Lore ID")

    lore_delete = lore_sub.add_parser("delete", help="Delete a lore")
    lore_delete.add_argument("id", help="Lore ID")

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Synchronize workspaces through git")
    sync_sub = sync_parser.add_subparsers(dest="action")
    for action, help_text in (
        ("init", "Prepare the workspace's sync repository"),
        ("push", "Commit and publish local changes"),
        ("pull", "Fetch and apply changes from other devices"),
        ("run", "Pull, then push"),
        ("status", "Show the sync state"),
        ("export", "Write a full snapshot to state/current-export.json"),
    ):
        action_parser = sync_sub.add_parser(action, help=help_text)
        ws_arg = action_parser.add_argument(
            "-w",
            "--workspace",
            help="Workspace name (default: the default workspace)",
        )
        if workspace_completer:
            ws_arg.completer = workspace_completer
        if action in ("push", "pull", "run", "status"):
            action_parser.add_argument("--json", action="store_true", help="Output as JSON")

    sync_due = sync_sub.add_parser("due", help="Sync every workspace whose interval elapsed")
    sync_due.add_argument(
        "--dry-run",
        action="store_true",
        help="Only list the workspaces that are due",
    )

    # export command
    export_parser = subparsers.add_parser(
        "export",
        help="Export realms, lores and relations to a JSON file",
    )
    export_parser.add_argument(
        "file",
        help="Output file path (use - for stdout)",
    )
    export_realm = export_parser.add_argument(
        "--realm",
        help="Only export this realm (name or ID)",
    )
    if realm_completer:
        export_realm.completer = realm_completer

    # import command
    import_parser = subparsers.add_parser(
        "import",
        help="Import realms, lores and relations from a JSON file",
    )
    import_parser.add_argument(
        "file",
        help="Input file path (use - for stdin)",
    )
    import_parser.add_argument(
        "--merge",
        action="store_true",
        help="Keep existing data and skip records that already exist "
        "(default: replace everything)",
    )

    # completions command
    completions_parser = subparsers.add_parser(
        "completions",
        help="Output shell completion setup instructions",
    )
    completions_parser.add_argument(
        "shell",
        choices=["bash", "zsh", "fish"],
        help="Shell type",
    )

    return parser


def _resolve_workspace(store: LoreStore, name: str | None) -> Workspace | None:
    """Find a workspace by name, or the default one when no name is given."""
    if name:
        workspace = store.find_workspace_by_name(name)
        if workspace is None:
            print_error(f"Workspace '{name}' not found")
        return workspace
    workspace = store.get_default_workspace()
    if workspace is None:
        print_error("No workspaces yet. Create one with: lorehub workspace create <name>")
    return workspace


def _resolve_realm(store: LoreStore, name_or_id: str) -> dict | None:
    realm = store.find_realm_by_name(name_or_id) or store.find_realm(name_or_id)
    if realm is None:
        print_error(f"Realm '{name_or_id}' not found")
    return realm


def cmd_workspace(args: argparse.Namespace, store: LoreStore) -> int:
    """Handle the workspace command."""
    if args.action == "create":
        try:
            workspace = store.create_workspace(
                args.name,
                sync_enabled=bool(args.repo) and not args.no_sync,
                sync_repo=args.repo,
                sync_branch=args.branch,
                auto_sync=not args.no_auto_sync,
                sync_interval=args.interval,
                is_default=args.default,
            )
        except ValueError as e:
            print_error(str(e))
            return 1
        print_success(f"Created workspace: {workspace.name}")
        console.print(f"ID: [dim]{workspace.id}[/dim]")
        return 0

    if args.action == "list":
        workspaces = store.list_workspaces()
        if not workspaces:
            print_warning("No workspaces found.")
            return 0
        console.print(create_workspace_table(workspaces))
        return 0

    if args.action == "edit":
        workspace = _resolve_workspace(store, args.name)
        if workspace is None:
            return 1
        fields = {}
        if args.rename:
            fields["name"] = args.rename
        if args.repo is not None:
            fields["sync_repo"] = args.repo or None
        if args.branch:
            fields["sync_branch"] = args.branch
        if args.enable_sync:
            fields["sync_enabled"] = True
        if args.disable_sync:
            fields["sync_enabled"] = False
        if args.auto_sync:
            fields["auto_sync"] = True
        if args.no_auto_sync:
            fields["auto_sync"] = False
        if args.interval is not None:
            fields["sync_interval"] = args.interval
        if args.default:
            fields["is_default"] = True
        if not fields:
            print_warning("Nothing to change.")
            return 0
        try:
            updated = store.update_workspace(workspace.id, **fields)
        except ValueError as e:
            print_error(str(e))
            return 1
        print_success(f"Updated workspace: {updated.name}")
        return 0

    if args.action == "link":
        workspace = _resolve_workspace(store, args.name)
        realm = _resolve_realm(store, args.realm) if workspace else None
        if workspace is None or realm is None:
            return 1
        store.link_realm_to_workspace(realm["id"], workspace.id)
        print_success(f"Linked realm {realm['name']} to workspace {workspace.name}")
        return 0

    print_error("Specify an action: create, list, edit or link")
    return 1


def cmd_realm(args: argparse.Namespace, store: LoreStore) -> int:
    """Handle the realm command."""
    if args.action == "add":
        path = os.path.abspath(args.path or os.getcwd())
        if store.find_realm_by_path(path):
            print_error(f"A realm is already registered at {path}")
            return 1
        if args.workspace:
            workspace = _resolve_workspace(store, args.workspace)
            if workspace is None:
                return 1
        else:
            workspace = store.ensure_default_workspace()
        realm = store.create_realm(
            args.name,
            path,
            git_remote=args.git_remote,
            is_monorepo=bool(args.provinces),
            provinces=args.provinces,
            workspace_id=workspace.id,
        )
        print_success(f"Added realm: {realm['name']}")
        console.print(f"ID: [dim]{realm['id']}[/dim]")
        return 0

    if args.action == "list":
        realms = store.list_realms()
        if not realms:
            print_warning("No realms found.")
            return 0
        console.print(create_realm_table(realms))
        return 0

    print_error("Specify an action: add or list")
    return 1


def cmd_lore(args: argparse.Namespace, store: LoreStore) -> int:
    """Handle the lore command."""
    if args.action == "add":
        realm = _resolve_realm(store, args.realm)
        if realm is None:
            return 1
        try:
            lore = store.create_lore(
                realm["id"],
                args.content,
                args.type,
                why=args.why,
                sigils=args.sigils,
                confidence=args.confidence,
            )
        except ValueError as e:
            print_error(str(e))
            return 1
        print_success(f"Recorded lore: {lore['id']}")
        return 0

    if args.action == "list":
        realm = _resolve_realm(store, args.realm)
        if realm is None:
            return 1
        lores = store.list_lores_by_realm(realm["id"], include_archived=args.all)
        if args.json:
            print(json.dumps(lores, indent=2))
            return 0
        if not lores:
            print_warning(f"No lores in realm {realm['name']}.")
            return 0
        for lore in lores:
            print_lore_item(lore)
        return 0

    if args.action == "archive":
        if not store.soft_delete_lore(args.id):
            print_error(f"Lore {args.id} not found")
            return 1
        print_success(f"Archived lore: {args.id}")
        return 0

    if args.action == "delete":
        if not store.delete_lore(args.id):
            print_error(f"Lore {args.id} not found")
            return 1
        print_success(f"Deleted lore: {args.id}")
        return 0

    print_error("Specify an action: add, list, archive or delete")
    return 1


def cmd_export(args: argparse.Namespace, store: LoreStore) -> int:
    """Handle the export command."""
    realm_id = None
    if args.realm:
        realm = _resolve_realm(store, args.realm)
        if realm is None:
            return 1
        realm_id = realm["id"]

    data = store.export_data(realm_id=realm_id)
    output = json.dumps(data, indent=2, default=str)

    if args.file == "-":
        print(output)
    else:
        with open(args.file, "w") as f:
            f.write(output)
        print_success(
            f"Exported {len(data['realms'])} realms, {len(data['lores'])} lores "
            f"and {len(data['relations'])} relations to {args.file}"
        )
    return 0


def cmd_import(args: argparse.Namespace, store: LoreStore) -> int:
    """Handle the import command."""
    if args.file == "-":
        raw = sys.stdin.read()
    else:
        with open(args.file) as f:
            raw = f.read()

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        print_error(f"Invalid JSON: {e}")
        return 1

    if not isinstance(data, dict) or not all(
        isinstance(data.get(key, []), list) for key in ("realms", "lores", "relations")
    ):
        print_error("JSON must be an object with 'realms', 'lores' and 'relations' lists")
        return 1

    try:
        counts = store.import_data(data, mode="merge" if args.merge else "replace")
    except (KeyError, TypeError, ValueError) as e:
        print_error(f"Import failed: {e}")
        return 1

    print_success("Import complete:")
    console.print(f"  Realms:    [cyan]{counts['realms']}[/cyan]")
    console.print(f"  Lores:     [cyan]{counts['lores']}[/cyan]")
    console.print(f"  Relations: [cyan]{counts['relations']}[/cyan]")
    return 0


def cmd_sync(args: argparse.Namespace, store: LoreStore) -> int:
    """Handle the sync command."""
    if args.action == "due":
        return cmd_sync_due(args, store)
    if args.action is None:
        print_error("Specify an action: init, push, pull, run, status, export or due")
        return 1

    workspace = _resolve_workspace(store, args.workspace)
    if workspace is None:
        return 1
    if not workspace.sync_enabled:
        print_error(
            f"Sync is disabled for workspace {workspace.name}. "
            f"Enable it with: lorehub workspace edit {workspace.name} --enable-sync"
        )
        return 1

    adapter = store.tracker.get_adapter(workspace)

    if args.action == "init":
        print_success(f"Sync repository ready: {adapter.sync_path}")
        return 0

    if args.action == "status":
        status = adapter.status()
        if args.json:
            print(json.dumps(status, indent=2))
        else:
            console.print(create_status_table(status))
        return 0

    if args.action == "export":
        summary = adapter.export_workspace_data()
        print_success(f"Exported workspace {workspace.name}:")
        console.print(f"  Realms:    [cyan]{summary['realms']}[/cyan]")
        console.print(f"  Lores:     [cyan]{summary['lores']}[/cyan]")
        console.print(f"  Relations: [cyan]{summary['relations']}[/cyan]")
        console.print(f"  File:      [dim]{summary['path']}[/dim]")
        return 0

    if args.action == "push":
        result = adapter.push()
        label = "Push"
    elif args.action == "pull":
        result = adapter.pull()
        label = "Pull"
    else:
        result = adapter.sync()
        label = "Sync"

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print_sync_result(result, label)
    return 0 if result.ok else 1


def cmd_sync_due(args: argparse.Namespace, store: LoreStore) -> int:
    """Handle 'sync due'."""
    if args.dry_run:
        due = due_workspaces(store)
        if not due:
            console.print("[dim]No workspaces are due for sync.[/dim]")
        for workspace in due:
            console.print(f"  {workspace.name} [dim]({workspace.sync_repo})[/dim]")
        return 0

    results = run_due_syncs(store)
    if not results:
        console.print("[dim]No workspaces are due for sync.[/dim]")
        return 0

    exit_code = 0
    for name, result in results.items():
        console.print(f"[bold]{name}[/bold]")
        print_sync_result(result)
        if not result.ok:
            exit_code = 1
    return exit_code


def cmd_completions(args: argparse.Namespace) -> int:
    """Handle the completions command."""
    if not ARGCOMPLETE_AVAILABLE:
        print_error("argcomplete is not installed.")
        console.print("Install with: [cyan]pip install 'lorehub[completions]'[/cyan]")
        return 1

    shell = args.shell

    if shell == "bash":
        print("""# Add this to your ~/.bashrc:
eval "$(register-python-argcomplete lorehub)"
""")
    elif shell == "zsh":
        print("""# Add this to your ~/.zshrc:
autoload -U bashcompinit
bashcompinit
eval "$(register-python-argcomplete lorehub)"
""")
    elif shell == "fish":
        print("""# Run this command once:
register-python-argcomplete --shell fish lorehub > ~/.config/fish/completions/lorehub.fish
""")

    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()

    # Enable argcomplete if available
    if ARGCOMPLETE_AVAILABLE:
        argcomplete.autocomplete(parser)

    args = parser.parse_args(argv)

    # Handle --no-color flag and NO_COLOR environment variable
    if args.no_color or os.environ.get("NO_COLOR"):
        console.no_color = True

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.command:
        parser.print_help()
        return 0

    # Handle completions command separately (doesn't need LoreStore)
    if args.command == "completions":
        return cmd_completions(args)

    try:
        store = LoreStore()
    except Exception as e:
        print_error(f"Opening lorehub database: {e}")
        return 1

    try:
        if args.command == "workspace":
            return cmd_workspace(args, store)
        elif args.command == "realm":
            return cmd_realm(args, store)
        elif args.command == "lore":
            return cmd_lore(args, store)
        elif args.command == "sync":
            return cmd_sync(args, store)
        elif args.command == "export":
            return cmd_export(args, store)
        elif args.command == "import":
            return cmd_import(args, store)
        else:
            parser.print_help()
            return 0
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        return 130
    except Exception as e:
        print_error(str(e))
        return 1
    finally:
        store.tracker.cleanup()
        store.close()


if __name__ == "__main__":
    sys.exit(main())
