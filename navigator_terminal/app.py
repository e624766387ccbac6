"""
aiohttp application wiring.

``setup_terminal`` mounts the relay websocket route and ties the session
registry to the application lifecycle; ``setup_vault`` loads the credential
vault at startup and flushes it at cleanup. ``create_app`` does both.
"""
import logging
from typing import Optional

from aiohttp import web

from .conf import TerminalConfig
from .relay import RealtimeRelay
from .session import SessionRegistry
from .vault import CredentialVault, VaultConfig

logger = logging.getLogger("navigator.terminal")

REGISTRY_KEY = web.AppKey("terminal_registry", SessionRegistry)
RELAY_KEY = web.AppKey("terminal_relay", RealtimeRelay)
VAULT_KEY = web.AppKey("terminal_vault", CredentialVault)


def setup_terminal(
    app: web.Application,
    registry: Optional[SessionRegistry] = None,
    config: Optional[TerminalConfig] = None,
) -> RealtimeRelay:
    """Mount the terminal websocket endpoint on ``app``.

    Args:
        app: aiohttp application.
        registry: Session registry to serve; a new one is created if omitted.
        config: Relay configuration; read from environment if omitted.

    Returns:
        The relay serving the endpoint.
    """
    config = config or (registry.config if registry else TerminalConfig.from_env())
    registry = registry or SessionRegistry(config)
    relay = RealtimeRelay(registry, config)
    app[REGISTRY_KEY] = registry
    app[RELAY_KEY] = relay
    app.router.add_get(config.ws_path, relay.handle)

    async def _start_relay(app: web.Application) -> None:
        await relay.start()

    async def _stop_relay(app: web.Application) -> None:
        await relay.shutdown()

    async def _close_sessions(app: web.Application) -> None:
        await registry.close_all()

    app.on_startup.append(_start_relay)
    app.on_shutdown.append(_stop_relay)
    app.on_cleanup.append(_close_sessions)
    logger.info("Terminal relay mounted at %s", config.ws_path)
    return relay


def setup_vault(
    app: web.Application,
    config: Optional[VaultConfig] = None,
) -> None:
    """Load the credential vault on startup and flush it on cleanup."""

    async def _vault_ctx(app: web.Application):
        vault = await CredentialVault.load(config)
        app[VAULT_KEY] = vault
        yield
        await vault.close()

    app.cleanup_ctx.append(_vault_ctx)


def create_app(
    config: Optional[TerminalConfig] = None,
    vault_config: Optional[VaultConfig] = None,
) -> web.Application:
    app = web.Application()
    setup_vault(app, vault_config)
    setup_terminal(app, config=config)
    return app
