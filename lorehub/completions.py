"""Shell completion helpers for the lorehub CLI."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from argparse import Namespace


def get_workspace_completer():
    """Return a completer function for workspace names.

    The completer is lazy-loaded to avoid opening the database at module load.
    """

    def completer(prefix: str, parsed_args: Namespace, **kwargs) -> list[str]:
        try:
            from lorehub.storage import LoreStore

            store = LoreStore()
            names = [workspace.name for workspace in store.list_workspaces()]
            store.close()
            return [name for name in names if name.startswith(prefix)]
        except Exception:
            return []

    return completer


def get_realm_completer():
    """Return a completer function for realm names."""

    def completer(prefix: str, parsed_args: Namespace, **kwargs) -> list[str]:
        try:
            from lorehub.storage import LoreStore

            store = LoreStore()
            names = [realm["name"] for realm in store.list_realms()]
            store.close()
            return [name for name in names if name.startswith(prefix)]
        except Exception:
            return []

    return completer
