# rideguard/core/service_base.py
"""
Base class for services that wrap an external client.

Gives every backend wrapper the same lifecycle:
lazy initialization, health check, graceful shutdown.
"""
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, TypeVar, Generic
import logging
from rideguard.core.exceptions import StoreError, ConfigurationError

ConfigType = TypeVar('ConfigType')


class ServiceConfig:
    """Base configuration class for services"""
    pass


class BaseService(ABC, Generic[ConfigType]):
    """
    Abstract base class for client-backed services.

    Subclasses implement `_initialize_client` and `health_check`;
    `initialize` is idempotent.
    """

    def __init__(
        self,
        config: Optional[ConfigType] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.config = config
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._initialized = False
        self._client = None

        self.service_name = self.__class__.__name__

    @abstractmethod
    async def _initialize_client(self) -> Any:
        """
        Create and connect the underlying client.

        Raises:
            ConfigurationError: If configuration is invalid
            StoreError: If initialization fails
        """
        pass

    async def initialize(self) -> None:
        """Initialize the service (lazy loading pattern)."""
        if self._initialized:
            self.logger.debug(f"{self.service_name} already initialized")
            return

        try:
            self.logger.info(f"Initializing {self.service_name}...")
            self._validate_config()
            self._client = await self._initialize_client()
            self._initialized = True
            self.logger.info(f"{self.service_name} initialized successfully")

        except ConfigurationError:
            raise
        except Exception as e:
            error_msg = f"Failed to initialize {self.service_name}"
            self.logger.error(error_msg, exc_info=True)
            raise StoreError(
                error_msg,
                store_name=self.service_name,
                operation="initialize",
                details={'original_error': str(e), 'error_type': type(e).__name__}
            )

    def _validate_config(self) -> None:
        """Override to add service-specific validation."""
        if self.config is None:
            self.logger.debug(f"No configuration provided for {self.service_name}")

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """
        Return a dict with `healthy` (bool), `status` (str) and optional `details`.
        """
        pass

    async def ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def client(self) -> Any:
        """
        Get the underlying client.

        Raises:
            StoreError: If service is not initialized
        """
        if not self._initialized or self._client is None:
            raise StoreError(
                f"{self.service_name} is not initialized. Call initialize() first.",
                store_name=self.service_name
            )
        return self._client

    async def shutdown(self) -> None:
        """Gracefully shut down the service and release the client."""
        if not self._initialized:
            return

        try:
            self.logger.info(f"Shutting down {self.service_name}...")
            await self._cleanup()
            self._client = None
            self._initialized = False
            self.logger.info(f"{self.service_name} shut down successfully")

        except Exception:
            self.logger.error(f"Error during {self.service_name} shutdown", exc_info=True)

    async def _cleanup(self) -> None:
        """Override to release service-specific resources."""
        pass

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "service_name": self.service_name,
            "initialized": self._initialized,
        }
