import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from cofund_sale.accounts import NativeBank
from cofund_sale.config import STATE_DIR, STATE_FILE_NAME
from cofund_sale.deploy import Deployment, deploy_sale
from cofund_sale.entitlement import EntitlementToken
from cofund_sale.errors import ConfigurationError
from cofund_sale.events import AnyEvent, EventLog
from cofund_sale.ledger import IMPLEMENTATIONS, Clock
from cofund_sale.proxy import SaleProxy
from cofund_sale.schemas import BankState, TokenState
from mcp.server.fastmcp.utilities.logging import get_logger

logger = get_logger(__name__)

# Determine the absolute path to the directory containing this file
MODULE_DIR = Path(__file__).parent.resolve()

DEFAULT_STATE_PATH = MODULE_DIR / STATE_DIR / STATE_FILE_NAME


class SaleSnapshot(BaseModel):
    sale_address: str
    implementation_version: str
    # validated against the implementation's storage model on load
    storage: Dict[str, Any]
    token: TokenState
    bank: BankState
    events: List[AnyEvent] = Field(default_factory=list)


def snapshot_deployment(deployment: Deployment) -> SaleSnapshot:
    sale = deployment.sale
    return SaleSnapshot(
        sale_address=sale.address,
        implementation_version=sale.implementation.version,
        storage=sale.storage.model_dump(mode="json"),
        token=deployment.token.state,
        bank=deployment.bank.state,
        events=list(deployment.events),
    )


def restore_deployment(snapshot: SaleSnapshot, clock: Optional[Clock] = None) -> Deployment:
    """
    Rebuilds live objects from a snapshot.

    Raises:
        ConfigurationError: If the snapshot names an unknown implementation.
    """
    implementation = IMPLEMENTATIONS.get(snapshot.implementation_version)
    if implementation is None:
        raise ConfigurationError(f"Unknown sale implementation '{snapshot.implementation_version}' in snapshot")
    storage = implementation.storage_model.model_validate(snapshot.storage)
    token = EntitlementToken(state=snapshot.token.model_copy(deep=True))
    bank = NativeBank(state=snapshot.bank.model_copy(deep=True))
    events = EventLog([e.model_copy() for e in snapshot.events])
    sale = SaleProxy(
        address=snapshot.sale_address,
        implementation=implementation,
        storage=storage,
        token=token,
        bank=bank,
        events=events,
        clock=clock,
    )
    return Deployment(sale=sale, token=token, bank=bank, events=events)


def save_deployment(deployment: Deployment, path: Path = DEFAULT_STATE_PATH) -> bool:
    """Writes the deployment snapshot as JSON. Returns False (and logs) if writing fails."""
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        snapshot = snapshot_deployment(deployment)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(snapshot.model_dump(mode="json"), f, indent=4)
        tmp_path.replace(path)
        logger.debug(f"Saved sale snapshot ({len(snapshot.events)} events) to {path}")
        return True
    except OSError as e:
        logger.error(f"Error saving sale snapshot to {path}: {e}")
        return False


def load_deployment(path: Path = DEFAULT_STATE_PATH, clock: Optional[Clock] = None) -> Optional[Deployment]:
    """
    Loads a deployment from its JSON snapshot.

    Returns:
        The restored deployment, or None if no snapshot exists yet.

    Raises:
        ConfigurationError: If the snapshot exists but cannot be decoded or
            validated. A broken snapshot is never replaced silently.
    """
    path = Path(path)
    if not path.is_file():
        logger.warning(f"Sale snapshot not found: {path}")
        return None
    try:
        with open(path, "r") as f:
            data = json.load(f)
        snapshot = SaleSnapshot.model_validate(data)
    except json.JSONDecodeError as e:
        logger.error(f"Error decoding JSON from sale snapshot {path}: {e}")
        raise ConfigurationError(f"Sale snapshot {path} is not valid JSON: {e}")
    except ValidationError as e:
        logger.error(f"Invalid sale snapshot in {path}: {e}")
        raise ConfigurationError(f"Sale snapshot {path} is invalid: {e}")

    deployment = restore_deployment(snapshot, clock=clock)
    logger.info(
        f"Loaded sale {snapshot.sale_address} ({snapshot.implementation_version}) from {path}: "
        f"{len(deployment.sale.storage.rounds)} round(s), {len(deployment.events)} event(s)"
    )
    return deployment


def load_or_deploy(path: Path = DEFAULT_STATE_PATH, clock: Optional[Clock] = None) -> Deployment:
    """Loads the saved sale, or deploys a fresh one from configuration if none was saved."""
    deployment = load_deployment(path, clock=clock)
    if deployment is None:
        logger.info("No saved sale found, deploying a fresh one from configuration")
        deployment = deploy_sale(clock=clock)
    return deployment
