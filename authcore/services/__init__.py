"""
Session Services Package.

The ``create_services()`` factory wires the transport, the token manager,
the session store and the facade together, returning a typed dict that
the application layer can consume without knowing the internal
dependency graph.
"""

from __future__ import annotations

from typing import Optional, TypedDict

from authcore.api_client import AuthApi, HttpAuthApi
from authcore.config import AppConfig
from authcore.logger import get_logger
from authcore.services.auth_service import AuthService
from authcore.services.biometric_service import BiometricService
from authcore.services.cache_sync import ReactiveCacheSynchronizer
from authcore.services.credential_cache import CredentialCache
from authcore.services.device_trust import DeviceTrustDetector
from authcore.services.key_store import SecureKeyStore
from authcore.services.secure_storage import KeyValueStore
from authcore.services.token_manager import TokenLifecycleManager
from authcore.session import DeviceRegistrar, SessionStore


class ServiceContainer(TypedDict):
    """Typed container for the wired session services."""

    api: AuthApi
    tokens: TokenLifecycleManager
    session: SessionStore
    credential_cache: CredentialCache
    cache_sync: ReactiveCacheSynchronizer
    biometric_service: BiometricService
    auth_service: AuthService


def create_services(
    config: AppConfig,
    storage: KeyValueStore,
    key_store: SecureKeyStore,
    api: Optional[AuthApi] = None,
    device_registrar: Optional[DeviceRegistrar] = None,
) -> ServiceContainer:
    """Wire every session service together.

    This is the single composition root for the session layer.  The
    entry point calls it once at startup.

    Args:
        config: Application configuration.
        storage: Durable key-value store (tokens, session record,
            biometric records).
        key_store: Platform keystore holding the biometric key pair.
        api: Transport override; defaults to ``HttpAuthApi`` on
            ``config.API_BASE_URL``.
        device_registrar: Optional push/device registration hook.

    Returns:
        ServiceContainer mapping service names to fully-wired instances.
    """
    logger = get_logger("services")

    # ------------------------------------------------------------------
    # 1. Transport and token state
    # ------------------------------------------------------------------
    transport: AuthApi = api if api is not None else HttpAuthApi(
        config=config, logger=get_logger("api")
    )
    tokens = TokenLifecycleManager(api=transport, storage=storage, config=config, logger=logger)
    if isinstance(transport, HttpAuthApi):
        transport.bind_token_source(tokens)

    # ------------------------------------------------------------------
    # 2. Leaf services
    # ------------------------------------------------------------------
    classifier = DeviceTrustDetector(logger=logger)
    credential_cache = CredentialCache(logger=logger)
    cache_sync = ReactiveCacheSynchronizer(
        logger=logger, default_max_age_s=config.PROFILE_STALE_S,
    )

    # ------------------------------------------------------------------
    # 3. Session store and orchestration
    # ------------------------------------------------------------------
    session = SessionStore(
        api=transport,
        tokens=tokens,
        classifier=classifier,
        credential_cache=credential_cache,
        cache_sync=cache_sync,
        storage=storage,
        logger=get_logger("session"),
        device_registrar=device_registrar,
        logout_timeout_s=config.LOGOUT_TIMEOUT_S,
    )
    biometric_service = BiometricService(
        api=transport,
        key_store=key_store,
        storage=storage,
        session=session,
        config=config,
        logger=logger,
    )
    auth_service = AuthService(
        api=transport,
        session=session,
        tokens=tokens,
        classifier=classifier,
        credential_cache=credential_cache,
        cache_sync=cache_sync,
        biometric=biometric_service,
        config=config,
        logger=logger,
    )

    return ServiceContainer(
        api=transport,
        tokens=tokens,
        session=session,
        credential_cache=credential_cache,
        cache_sync=cache_sync,
        biometric_service=biometric_service,
        auth_service=auth_service,
    )
