import asyncio
import logging
import re
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, NoReturn, TypeVar

from yieldsentry.exceptions import AdapterFetchError, DataTransformError, OpportunityNotFoundError
from yieldsentry.schemas import Opportunity, ProtocolInfo

logger = logging.getLogger(__name__)

T = TypeVar("T")

_ID_SEPARATORS = re.compile(r"[/\s]")


class BaseAdapter(ABC):
    """
    Abstract base class for all yield sources (DefiLlama, protocol APIs, etc.)
    Subclasses must return complete data or raise: never a silently truncated list.
    """

    def __init__(self, info: ProtocolInfo):
        self.info = info

    @property
    def name(self) -> str:
        return self.info.name

    @abstractmethod
    async def list(self) -> List[Opportunity]:
        """Fetch every opportunity this source currently reports."""
        pass

    async def detail(self, opportunity_id: str) -> Opportunity:
        """Look up one opportunity by id. Raises OpportunityNotFoundError if absent."""
        for opportunity in await self.list():
            if opportunity.id == opportunity_id:
                return opportunity
        raise OpportunityNotFoundError(opportunity_id)

    def protocol_info(self) -> ProtocolInfo:
        return self.info

    def create_opportunity_id(self, protocol: str, pool: str) -> str:
        return f"{protocol.lower()}-{_ID_SEPARATORS.sub('-', pool.lower())}"

    def calculate_risk(self, apr: float, tvl_usd: float = 0.0, is_stablecoin: bool = False) -> str:
        """
        Bucket an opportunity by APR (as a fraction, 0.12 == 12%).
        Stablecoin pairs under 10% are low risk regardless.
        """
        if is_stablecoin and apr < 0.1:
            return "low"
        if apr < 0.15:
            return "low"
        if apr < 0.3:
            return "med"
        return "high"

    async def fetch_with_retry(
        self,
        fetch_fn: Callable[[], Awaitable[T]],
        retries: int = 3,
        delay_sec: float = 1.0,
    ) -> T:
        """
        Call fetch_fn up to `retries` times, doubling the pause after each failure.
        Shape errors are not retried: the upstream will send the same payload again.
        """
        attempt = 0
        while True:
            try:
                return await fetch_fn()
            except DataTransformError:
                raise
            except Exception as e:
                attempt += 1
                if attempt >= retries:
                    raise
                logger.warning(
                    "%s fetch failed (attempt %d/%d): %s, retrying in %.1fs",
                    self.name, attempt, retries, e, delay_sec,
                )
                await asyncio.sleep(delay_sec)
                delay_sec *= 2

    def handle_error(self, error: Exception, context: str) -> NoReturn:
        logger.error("Error in %s adapter (%s): %s", self.name, context, error)
        if isinstance(error, (AdapterFetchError, DataTransformError, OpportunityNotFoundError)):
            raise error
        raise AdapterFetchError(self.name, str(error)) from error
