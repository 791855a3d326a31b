from fastapi import Depends

from .config import Settings, get_settings
from .contracts import ContractService
from .errors import ConfigurationError
from .retry import TreeGenerationRetryService
from .storage import build_storage
from .usdt import UsdtVerifier


def get_contract_service(settings: Settings = Depends(get_settings)) -> ContractService:
    return ContractService(settings, build_storage(settings))


def get_usdt_verifier(settings: Settings = Depends(get_settings)) -> UsdtVerifier:
    return UsdtVerifier(settings)


def get_retry_service() -> TreeGenerationRetryService:
    return TreeGenerationRetryService()


def require_workspace_id(settings: Settings) -> str:
    if not settings.default_workspace_id:
        raise ConfigurationError("Workspace ID not configured")
    return settings.default_workspace_id
