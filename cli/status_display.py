"""Status display functionality for CLI"""

import datetime
from typing import Any, Dict

from rich.table import Table

from session_auth import TokenStore
from session_auth.jwt_utils import get_token_status
from session_auth.models import PKCEPair


STATUS_STYLES = {
    "valid": "green",
    "expiring_soon": "yellow",
    "expired": "red",
    "invalid": "red",
}


def _with_local_time(epoch) -> str:
    """``epoch (local ISO time)``, or the bare value when out of range"""
    try:
        moment = datetime.datetime.fromtimestamp(epoch)
    except (OverflowError, OSError, ValueError):
        return f"{epoch} (out of range)"
    return f"{epoch} ({moment.isoformat(timespec='seconds')})"


def show_session_status(store: TokenStore, console):
    """
    Display the current session

    Args:
        store: TokenStore instance
        console: Rich console for output
    """
    info = store.get_debug_info()
    expiration = info["expiration"]

    table = Table(title="Session Status")
    table.add_column("Property", style="cyan")
    table.add_column("Value")

    table.add_row("Authenticated", "Yes" if info["is_authenticated"] else "No")
    table.add_row("Flow", info["flow"] or "-")
    table.add_row("Storage", info["storage_type"])

    if info["has_access_token"]:
        status = get_token_status(store.access_token)
        style = STATUS_STYLES.get(status.status, "white")
        table.add_row("Access Token", info["access_token_preview"])
        table.add_row("Token Status", f"[{style}]{status.status}[/{style}] ({status.message})")
        table.add_row("Refresh Token", "Yes" if info["has_refresh_token"] else "No")
        table.add_row("ID Token", "Yes" if info["has_id_token"] else "No")

    if expiration:
        table.add_row("Expires At", expiration.expires_at.astimezone().isoformat(timespec="seconds"))
        table.add_row("Expires In", expiration.expires_in)
        if expiration.age:
            table.add_row("Age", expiration.age)

    if info["user"]:
        user = info["user"]
        table.add_row("User", str(user.get("email") or user.get("name") or user.get("id")))
        table.add_row("Role", str(user.get("role") or "-"))
        table.add_row("Scopes", ", ".join(user.get("scopes") or []) or "-")

    if info["session"]:
        table.add_row("Session", str(info["session"].get("sessionId") or "-"))

    console.print(table)


def show_token_debug(debug: Dict[str, Any], console):
    """
    Display a decoded token

    Args:
        debug: Output of jwt_utils.debug_token
        console: Rich console for output
    """
    if "error" in debug:
        console.print(f"[red]{debug['error']}[/red]")
        return

    validation = debug["validation"]

    table = Table(title="Token Details (signature NOT verified)")
    table.add_column("Property", style="cyan")
    table.add_column("Value")

    table.add_row("Preview", debug["token"]["preview"])
    table.add_row("Valid", "[green]Yes[/green]" if validation.valid else "[red]No[/red]")

    for key, value in debug["security"].items():
        table.add_row(key.replace("_", " ").title(), str(value) if value is not None else "-")
    for key, value in debug["timing"].items():
        table.add_row(key.replace("_", " ").title(), str(value) if value is not None else "-")

    for error in validation.errors:
        table.add_row("[red]Error[/red]", error)
    for warning in validation.warnings:
        table.add_row("[yellow]Warning[/yellow]", warning)

    console.print(table)

    if debug["payload"]:
        claims = Table(title="Claims")
        claims.add_column("Claim", style="cyan")
        claims.add_column("Value")
        for name, value in debug["payload"].items():
            if name in ("iat", "exp", "nbf") and isinstance(value, (int, float)):
                value = _with_local_time(value)
            claims.add_row(name, str(value))
        console.print(claims)


def show_pkce_pair(pair: PKCEPair, console):
    """
    Display a generated PKCE pair

    Args:
        pair: PKCEPair instance
        console: Rich console for output
    """
    table = Table(title="PKCE Pair")
    table.add_column("Property", style="cyan")
    table.add_column("Value", overflow="fold")

    table.add_row("Method", pair.method)
    table.add_row("Code Verifier", pair.code_verifier)
    table.add_row("Code Challenge", pair.code_challenge)
    table.add_row("Length", str(len(pair.code_verifier)))
    table.add_row("Entropy", f"{pair.entropy:.1f} bits")
    if pair.validation:
        for warning in pair.validation.warnings:
            table.add_row("[yellow]Warning[/yellow]", warning)

    console.print(table)
