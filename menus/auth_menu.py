import time
import webbrowser

import questionary

from spotify_remote.auth import (
    check_spotify_credentials,
    get_client_credentials,
    spotify_app_setup_instructions,
)
from spotify_remote.client import SpotifyClient
from spotify_remote.credential_store import JsonCredentialStore
from spotify_remote.errors import ConfigurationError, CredentialStoreError
from spotify_remote.login import login_spotify_vps_aware
from utils.logger import log_info, log_warning, log_error, log_success


def _format_expiry(expires_ms: int) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(expires_ms / 1000.0))


def spotify_setup_help(config: dict) -> None:
    creds = check_spotify_credentials(config)
    log_info("\n" + "=" * 72)
    log_info("SPOTIFY WEB API SETUP")
    log_info("=" * 72)
    log_info(spotify_app_setup_instructions(redirect_uri=creds["redirect_uri"]))
    log_info("Current config status:")
    log_info(f"- client id: {creds['client_id_source'].upper()}")
    log_info(f"- client secret: {creds['client_secret_source'].upper()}")
    log_info(f"- redirect uri: {creds['redirect_uri']}")
    log_info(f"- auth profiles file: {config.get('auth_profiles_path')}")
    log_info("")
    if not creds["ok"]:
        log_warning(creds["message"])
    else:
        log_info(creds["message"])
    log_info("=" * 72 + "\n")


def spotify_token_status(config: dict) -> str:
    store = JsonCredentialStore(config["auth_profiles_path"])
    try:
        credential = store.load(config["spotify_profile_id"])
    except CredentialStoreError as e:
        return str(e)

    expired = not credential.is_fresh()
    account = credential.email or credential.display_name or "unknown account"
    return (
        f"Profile: {config['spotify_profile_id']} ({account}) | "
        f"Needs refresh: {'YES' if expired else 'NO'} | Expires at: {_format_expiry(credential.expires)}"
    )


def spotify_authenticate(config: dict) -> bool:
    """Run the VPS-aware login and store the credential. Returns True on success."""
    try:
        client_creds = get_client_credentials(config)
    except ConfigurationError as e:
        log_error(str(e))
        spotify_setup_help(config)
        return False

    def on_url(url: str) -> None:
        log_info("Authorization URL:")
        log_info(url)
        log_info("")

    log_info("🎵 Spotify Authentication")
    log_info("========================\n")
    log_info("Starting OAuth flow...\n")

    try:
        credential = login_spotify_vps_aware(
            client_creds.client_id,
            client_creds.client_secret,
            on_url,
            log_info,
            on_instructions=log_info,
            open_browser=webbrowser.open if config.get("open_browser", True) else None,
        )
    except Exception as e:
        log_error(f"Authentication error: {e}")
        return False

    store = JsonCredentialStore(config["auth_profiles_path"])
    try:
        store.save(config["spotify_profile_id"], credential.to_profile_dict())
    except (OSError, CredentialStoreError) as e:
        log_error(f"Authenticated, but saving credentials to {store.path} failed: {e}")
        return False

    log_success("Successfully authenticated with Spotify!\n")
    if credential.email:
        log_info(f"  Account:      {credential.email}")
    if credential.display_name:
        log_info(f"  Display name: {credential.display_name}")
    log_info(f"  Credentials saved to: {store.path}\n")
    return True


def spotify_show_account(config: dict) -> None:
    client = SpotifyClient(config)
    try:
        me = client.me()
    except Exception as e:
        log_error(f"Could not load Spotify account: {e}")
        return

    display = (me.get("display_name") or me.get("id") or "").strip()
    log_info(f"Signed in as: {display or 'unknown'}")
    if me.get("email"):
        log_info(f"Email: {me['email']}")
    if me.get("product"):
        log_info(f"Plan: {me['product']}")


def auth_menu(config: dict) -> None:
    """Display the Spotify account menu and handle user selections."""
    while True:
        log_info(spotify_token_status(config))
        choice = questionary.select(
            "🎵 Spotify — What would you like to do?",
            choices=[
                "Authenticate with Spotify",
                "Show signed-in account",
                "Spotify setup help",
                "Exit",
            ]
        ).ask()

        if choice == "Authenticate with Spotify":
            spotify_authenticate(config)

        elif choice == "Show signed-in account":
            spotify_show_account(config)

        elif choice == "Spotify setup help":
            spotify_setup_help(config)

        elif choice == "Exit" or choice is None:
            break
