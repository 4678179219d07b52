"""
Transfer History Reconciler

Best-effort transfer log from an external XCM indexer:
- Raw chain identifiers (para ids, free-text names) mapped to canonical names
- Unknown identifiers labelled "Parachain <id>"
- Indexer order kept (newest first), duplicates dropped by message id
- Latest requested fetch wins when refreshes overlap

Locally submitted attempts are never merged into this log; find_matching()
only looks one up.
"""

import asyncio
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiohttp
from loguru import logger

from .amount import Amount
from .config import IndexerSettings
from .errors import IndexerUnreachable, InvalidAmountError
from .topology import NetworkTopology

UNKNOWN_CHAIN_LABEL = "Parachain {id}"

SOURCE_FIELDS = ('origin_para_id', 'from_chain')
DESTINATION_FIELDS = ('dest_para_id', 'dest_chain')
ID_FIELDS = ('message_hash', 'unique_id')


@dataclass(frozen=True)
class HistoryRecord:
    """One indexed cross-chain transfer"""
    message_id: str
    canonical_source_chain: str
    canonical_destination_chain: str
    asset: str
    amount: Amount
    status: str
    observed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['amount'] = self.amount.to_display_string()
        data['amount_minor'] = self.amount.to_minor_string()
        data['observed_at'] = self.observed_at.isoformat()
        return data


class IndexerClient:
    """
    HTTP client for the indexer's XCM transfer list

    Request: POST {row, page, address, dest_para_id, message_type}
    Response: {code: 0, data: {list: [...]}}
    """

    def __init__(self, settings: Optional[IndexerSettings] = None):
        self.settings = settings or IndexerSettings()
        self.url = f"{self.settings.base_url.rstrip('/')}{self.settings.path}"
        self.timeout = aiohttp.ClientTimeout(total=self.settings.timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {'Content-Type': 'application/json'}
            if self.settings.api_key:
                headers['X-API-Key'] = self.settings.api_key
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=headers)
        return self._session

    async def fetch_page(
        self,
        address: str,
        dest_para_id: Optional[int] = None,
        page: int = 0,
        row: Optional[int] = None,
        message_type: Optional[str] = None
    ) -> Any:
        """
        Fetch one page of transfers for `address`

        Returns:
            Decoded JSON body

        Raises:
            IndexerUnreachable: non-2xx, transport error, timeout or non-JSON body
        """
        body: Dict[str, Any] = {
            'row': row or self.settings.page_size,
            'page': page,
            'address': address,
            'message_type': message_type or self.settings.message_type,
        }
        if dest_para_id is not None:
            body['dest_para_id'] = dest_para_id

        session = await self._get_session()
        try:
            async with session.post(self.url, json=body) as response:
                if response.status < 200 or response.status >= 300:
                    raise IndexerUnreachable(f"Indexer returned HTTP {response.status}")
                return await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise IndexerUnreachable(f"Indexer request failed: {str(e) or type(e).__name__}") from e
        except ValueError as e:
            raise IndexerUnreachable(f"Indexer returned invalid JSON: {e}") from e

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()


class HistoryReconciler:
    """
    Indexer-backed transfer log

    Features:
    - Chain identifier canonicalization through a static alias table
    - Per-record tolerance (a bad record is skipped, not fatal)
    - Empty result on indexer failure or malformed envelope
    - Generation counter so overlapping fetches never merge
    """

    def __init__(
        self,
        client: IndexerClient,
        chain_aliases: Optional[Dict[str, str]] = None,
        topology: Optional[NetworkTopology] = None
    ):
        self.client = client
        self.chain_aliases = {str(k).strip().lower(): v for k, v in (chain_aliases or {}).items()}
        self.topology = topology

        self._generation = 0
        self._records: Tuple[HistoryRecord, ...] = ()
        self.last_error: Optional[str] = None
        self.last_updated: Optional[datetime] = None

    @property
    def records(self) -> Tuple[HistoryRecord, ...]:
        return self._records

    def canonical_chain_name(self, identifier: Any) -> str:
        """
        Map a raw indexer chain identifier to a stable chain name

        Args:
            identifier: Para id (int or digit string) or free-text name

        Returns:
            Canonical name, or "Parachain <id>" when unknown
        """
        key = str(identifier).strip()
        alias = self.chain_aliases.get(key.lower())
        if alias:
            return alias

        if self.topology is not None and key.isdigit():
            para_id = int(key)
            chain = self.topology.relay if para_id == 0 else self.topology.find_by_para_id(para_id)
            if chain is not None:
                return chain.name

        return UNKNOWN_CHAIN_LABEL.format(id=key)

    @staticmethod
    def _first(raw: Dict[str, Any], names: Iterable[str]) -> Any:
        for name in names:
            value = raw.get(name)
            if value is not None and value != "":
                return value
        return None

    def _parse_record(self, raw: Any) -> HistoryRecord:
        if not isinstance(raw, dict):
            raise ValueError(f"record is not an object: {raw!r}")

        message_id = self._first(raw, ID_FIELDS)
        source = self._first(raw, SOURCE_FIELDS)
        destination = self._first(raw, DESTINATION_FIELDS)
        if message_id is None or source is None or destination is None:
            raise ValueError(f"record missing id or chain fields: {raw!r}")

        assets = raw.get('assets') or []
        if not isinstance(assets, list) or not assets or not isinstance(assets[0], dict):
            raise ValueError(f"record has no asset entry: {message_id}")
        entry = assets[0]
        amount = Amount.from_minor(str(entry['amount']), int(entry['decimals']))

        timestamp = raw.get('origin_block_timestamp')
        observed_at = datetime.fromtimestamp(int(timestamp), tz=timezone.utc)

        return HistoryRecord(
            message_id=str(message_id),
            canonical_source_chain=self.canonical_chain_name(source),
            canonical_destination_chain=self.canonical_chain_name(destination),
            asset=str(entry.get('symbol', '?')),
            amount=amount,
            status=str(raw.get('status', 'unknown')),
            observed_at=observed_at,
        )

    def parse_response(self, body: Any) -> List[HistoryRecord]:
        """
        Parse an indexer envelope into records, in indexer order

        Returns:
            De-duplicated records (empty for a malformed envelope)
        """
        if not isinstance(body, dict) or body.get('code') != 0:
            logger.warning(f"Indexer response rejected: {str(body)[:200]}")
            return []

        data = body.get('data') or {}
        raw_list = data.get('list') if isinstance(data, dict) else None
        if raw_list is None:
            return []
        if not isinstance(raw_list, list):
            logger.warning("Indexer response list is not an array")
            return []

        records: List[HistoryRecord] = []
        seen = set()
        for raw in raw_list:
            try:
                record = self._parse_record(raw)
            except (KeyError, TypeError, ValueError, InvalidAmountError, OverflowError) as e:
                logger.debug(f"Skipping malformed history record: {e}")
                continue

            if record.message_id in seen:
                continue
            seen.add(record.message_id)
            records.append(record)

        return records

    async def fetch(self, account: str, target_chain_filter: Optional[int] = None) -> List[HistoryRecord]:
        """
        Fetch transfer history for `account`

        Args:
            account: Account address
            target_chain_filter: Destination para id filter

        Returns:
            Records newest first; empty when the indexer is unavailable
        """
        self._generation += 1
        generation = self._generation

        try:
            body = await self.client.fetch_page(account, dest_para_id=target_chain_filter)
        except IndexerUnreachable as e:
            logger.warning(f"Transfer history unavailable: {e}")
            if generation == self._generation:
                self.last_error = str(e)
            return []

        records = self.parse_response(body)

        if generation != self._generation:
            logger.debug(f"Discarding stale history response (generation {generation} < {self._generation})")
            return records

        self._records = tuple(records)
        self.last_error = None
        self.last_updated = datetime.now(timezone.utc)
        logger.info(f"Transfer history refreshed: {len(records)} records")
        return records

    def find_matching(self, attempt: Any, slack_seconds: float = 60.0) -> Optional[HistoryRecord]:
        """
        Look up the indexed record that plausibly corresponds to a local attempt

        Matches on canonical source/destination, asset and exact amount, with
        the record observed no earlier than the attempt's creation (minus
        `slack_seconds` for clock skew). Nothing is merged.

        Args:
            attempt: TransferAttempt

        Returns:
            Matching HistoryRecord or None
        """
        if attempt.amount is None or self.topology is None:
            return None

        source = self.topology.chains.get(attempt.intent.source_chain)
        destination = self.topology.chains.get(attempt.intent.destination_chain)
        if source is None or destination is None:
            return None

        earliest = attempt.created_at - timedelta(seconds=slack_seconds)
        for record in self._records:
            if (record.canonical_source_chain == self.canonical_chain_name(source.para_id or 0)
                    and record.canonical_destination_chain == self.canonical_chain_name(destination.para_id or 0)
                    and record.asset == attempt.intent.asset
                    and record.amount.decimals == attempt.amount.decimals
                    and record.amount == attempt.amount
                    and record.observed_at >= earliest):
                return record
        return None

    async def close(self):
        await self.client.close()
