"""Authentication handlers for CLI"""

from rich.prompt import Prompt

from session_auth import (
    AuthenticationFailed,
    HttpError,
    NetworkError,
    PkceValidationError,
    SessionAuthError,
    SessionContext,
)
from session_auth.jwt_utils import debug_token
from session_auth.pkce import generate_pkce_pair
from cli.status_display import show_pkce_pair, show_session_status, show_token_debug


def describe_error(error: SessionAuthError) -> str:
    """
    Turn a session error into a one-line hint for the user

    Args:
        error: Error raised by the session client

    Returns:
        Human readable message
    """
    if isinstance(error, NetworkError):
        if error.is_timeout:
            return f"Request timed out. Check the server and retry ({error})"
        return f"Cannot reach the server. Check API_BASE_URL and retry ({error})"
    if isinstance(error, AuthenticationFailed):
        return f"Authentication failed: {error}. Please login again"
    if isinstance(error, HttpError) and error.status >= 500:
        return f"Server error ({error}). Try again later"
    if isinstance(error, PkceValidationError):
        return f"PKCE check failed: {error}. Start a new authorization with 'authorize'"
    return str(error)


async def handle_status(context: SessionContext, console, args) -> int:
    """Show the stored session"""
    show_session_status(context.store, console)
    return 0


async def handle_login(context: SessionContext, console, args) -> int:
    """Log in with email and password"""
    email = args.email or Prompt.ask("Email")
    password = args.password or Prompt.ask("Password", password=True)

    try:
        result = await context.api.login(email, password)
    except SessionAuthError as e:
        console.print(f"[red]Login failed:[/red] {describe_error(e)}")
        return 1

    user = result.user
    console.print(f"[green]✓ Logged in[/green] as {user.email if user and user.email else email}")
    show_session_status(context.store, console)
    return 0


async def handle_refresh(context: SessionContext, console, args) -> int:
    """Force a token refresh"""
    if not context.store.refresh_token:
        console.print("[yellow]No refresh token available. Please login first[/yellow]")
        return 1

    if await context.coordinator.force_refresh():
        console.print("[green]✓ Tokens refreshed[/green]")
        show_session_status(context.store, console)
        return 0

    console.print("[red]Refresh failed.[/red] The session was cleared, please login again")
    return 1


async def handle_logout(context: SessionContext, console, args) -> int:
    """Log out of this session, or of every session with --all"""
    if not context.store.access_token:
        console.print("[yellow]Not logged in[/yellow]")
        return 0

    if args.all:
        acknowledged = await context.api.logout_all()
    else:
        acknowledged = await context.api.logout()

    if acknowledged:
        console.print("[green]✓ Logged out[/green]")
    else:
        console.print("[yellow]Server did not confirm the logout; local session cleared[/yellow]")
    return 0


async def handle_authorize(context: SessionContext, console, args) -> int:
    """Start the OAuth2 authorization-code flow"""
    try:
        request = await context.oauth2.start_authorization_flow()
    except SessionAuthError as e:
        console.print(f"[red]Could not start authorization:[/red] {describe_error(e)}")
        return 1

    console.print("[bold]Open this URL in your browser to authorize:[/bold]")
    console.print(request.authorization_url, overflow="fold")
    console.print(f"\nState: [cyan]{request.state}[/cyan]")
    console.print(f"PKCE: {request.method} ({request.pkce_source} verifier)")
    console.print("\nThen run: [cyan]jwt-session exchange <code> --state <state>[/cyan]")
    return 0


async def handle_exchange(context: SessionContext, console, args) -> int:
    """Exchange an authorization code for tokens"""
    try:
        await context.oauth2.exchange_code(args.code, state=args.state)
    except SessionAuthError as e:
        console.print(f"[red]Code exchange failed:[/red] {describe_error(e)}")
        return 1

    console.print("[green]✓ Authorization complete[/green]")
    show_session_status(context.store, console)
    return 0


async def handle_inspect(context: SessionContext, console, args) -> int:
    """Decode a token (or the stored access token) without verifying it"""
    token = args.token or context.store.access_token
    if not token:
        console.print("[yellow]No token given and no stored access token[/yellow]")
        return 1
    show_token_debug(debug_token(token), console)
    return 0


async def handle_pkce(context: SessionContext, console, args) -> int:
    """Generate a PKCE pair"""
    try:
        pair = generate_pkce_pair(args.length, args.method)
    except ValueError as e:
        console.print(f"[red]ERROR:[/red] {e}")
        return 1
    show_pkce_pair(pair, console)
    return 0


async def handle_health(context: SessionContext, console, args) -> int:
    """Check the backend health endpoint"""
    health = await context.api.health_check()
    if health.get("status") == "unhealthy":
        console.print(f"[red]Unhealthy:[/red] {health.get('error')}")
        return 1
    console.print(f"[green]✓ Healthy[/green] {health}")
    return 0


HANDLERS = {
    "status": handle_status,
    "login": handle_login,
    "refresh": handle_refresh,
    "logout": handle_logout,
    "authorize": handle_authorize,
    "exchange": handle_exchange,
    "inspect": handle_inspect,
    "pkce": handle_pkce,
    "health": handle_health,
}
