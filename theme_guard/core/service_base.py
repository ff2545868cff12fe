# theme_guard/core/service_base.py
"""
Base class for services backed by an external connection.

Provides lazy, idempotent initialization, a health check interface and
graceful shutdown. Services are constructed explicitly and handed to the
application; there is no shared instance registry.
"""
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, TypeVar, Generic
import logging
from theme_guard.core.exceptions import ServiceError, ConfigurationError

ConfigType = TypeVar('ConfigType')


class ServiceConfig:
    """Base configuration class for services"""
    pass


class BaseService(ABC, Generic[ConfigType]):
    """
    Abstract base class for connection-backed services.

    Subclasses implement `_initialize_client` and `health_check`, and may
    override `_validate_config` and `_cleanup`.
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
        Create the underlying client and verify it can connect.

        Returns:
            The initialized client, or None when the service runs disabled
        """
        pass

    async def initialize(self) -> None:
        """
        Initialize the service. Multiple calls are safe.

        Raises:
            ConfigurationError: If configuration is invalid
            ServiceError: If initialization fails unexpectedly
        """
        if self._initialized:
            self.logger.debug(f"{self.service_name} already initialized")
            return

        try:
            self.logger.info(f"Initializing {self.service_name}...")
            self._validate_config()
            self._client = await self._initialize_client()
            self._initialized = True
            self.logger.info(f"{self.service_name} initialized")

        except ConfigurationError:
            raise
        except Exception as e:
            error_msg = f"Failed to initialize {self.service_name}"
            self.logger.error(error_msg, exc_info=True)
            raise ServiceError(
                error_msg,
                service_name=self.service_name,
                operation="initialize",
                details={'error_type': type(e).__name__}
            ) from e

    def _validate_config(self) -> None:
        """Override to add service-specific validation"""
        if self.config is None:
            self.logger.debug(f"No configuration provided for {self.service_name}")

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check on the service.

        Returns:
            Dict with `healthy` (bool), `status` (str) and optional `details`
        """
        pass

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def shutdown(self) -> None:
        """Release resources. Never raises."""
        if not self._initialized:
            return

        try:
            self.logger.info(f"Shutting down {self.service_name}...")
            await self._cleanup()
        except Exception:
            self.logger.error(f"Error during {self.service_name} shutdown", exc_info=True)
        finally:
            self._client = None
            self._initialized = False

    async def _cleanup(self) -> None:
        """Override to close connections"""
        pass

