"""
Holdings Fetcher - per-user, per-day xSTRK holdings from the timestamp-holdings API
Splits holdings across venues (Vesu, Ekubo, Nostra lending/DEX, wallet)
"""
from datetime import date
from typing import Dict, Optional
import asyncio

import aiohttp
from loguru import logger

import config
from utils import day_timestamp, format_amount, retry_with_backoff


def _to_int(value) -> int:
    """bigNumber comes back as a decimal string, sometimes hex or a plain number"""
    if isinstance(value, str) and value.lower().startswith('0x'):
        return int(value, 16)
    return int(value)


class HoldingsFetcher:
    """Fetch daily holdings snapshots from the holdings API"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        request_timeout: Optional[float] = None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        fetch_cfg = config.HOLDINGS_FETCH
        self.base_url = (base_url or config.HOLDINGS_API_URL).rstrip('/')
        self.max_retries = fetch_cfg['max_retries'] if max_retries is None else max_retries
        self.retry_delay = fetch_cfg['retry_delay'] if retry_delay is None else retry_delay
        self.timeout = aiohttp.ClientTimeout(
            total=fetch_cfg['request_timeout'] if request_timeout is None else request_timeout
        )
        self.session = session
        self._owns_session = session is None

        self.stats = {
            'requests': 0,
            'fetched': 0,
            'no_data': 0,
            'bad_payload': 0,
            'exhausted': 0,
        }

    async def __aenter__(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def close(self):
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None

    def build_url(self, user_address: str, timestamp: int) -> str:
        return f"{self.base_url}/{user_address}/{timestamp}"

    async def _request(self, url: str) -> Dict:
        """One GET; non-2xx raises ClientResponseError"""
        self.stats['requests'] += 1
        async with self.session.get(url, timeout=self.timeout) as resp:
            resp.raise_for_status()
            return await resp.json()

    async def fetch_holdings(self, user_address: str, day: date) -> Optional[Dict]:
        """
        Get one holdings snapshot

        Transport errors, timeouts and HTTP errors are retried up to
        max_retries attempts with a fixed delay. An empty `blocks` list or a
        payload missing venue fields is returned as None straight away.

        Args:
            user_address: Canonical user address
            day: Calendar day (UTC)

        Returns:
            Row dict for xstrk_holdings, or None. Never raises.
        """
        day_str = day.isoformat()
        timestamp = day_timestamp(day)
        url = self.build_url(user_address, timestamp)

        async def attempt():
            # 1-tuple: None stays reserved for exhausted retries
            return (await self._request(url),)

        try:
            response = await retry_with_backoff(
                attempt,
                max_attempts=self.max_retries,
                base_delay=self.retry_delay,
                exponential=False,
                exceptions=(aiohttp.ClientError, asyncio.TimeoutError, ValueError),
                label=f"holdings {user_address} {day_str}"
            )
        except Exception as e:
            self.stats['exhausted'] += 1
            logger.error(f"   ❌ Unexpected error fetching {user_address} for {day_str}: {e!r}")
            return None

        if response is None:
            # final failure already logged by retry_with_backoff
            self.stats['exhausted'] += 1
            return None

        data = response[0]
        if not isinstance(data, dict) or not data.get('blocks'):
            self.stats['no_data'] += 1
            logger.warning(f"   ⚠️ Invalid data format for user {user_address} on date: {day_str}")
            return None

        try:
            record = self.parse_holdings(data, user_address, day_str, timestamp)
        except (KeyError, IndexError, TypeError, ValueError, OverflowError) as e:
            self.stats['bad_payload'] += 1
            logger.warning(f"   ⚠️ Malformed holdings for {user_address} on {day_str}: {e!r}")
            return None

        self.stats['fetched'] += 1
        return record

    @staticmethod
    def parse_holdings(data: Dict, user_address: str, day_str: str, timestamp: int) -> Dict:
        """
        Turn an API payload into an xstrk_holdings row

        amount = bigNumber / 10^decimals in float, total = float sum. Floats
        are kept (not Decimal) so stored strings match existing rows.
        """
        row = {
            'user_address': user_address,
            'block_number': int(data['blocks'][0]['block']),
        }

        total = 0.0
        for source, column in config.HOLDING_COMPONENTS.items():
            amount = data[source][0]['xSTRKAmount']
            value = float(_to_int(amount['bigNumber'])) / float(10 ** int(amount['decimals']))
            row[column] = format_amount(value)
            total += value

        row['total_amount'] = format_amount(total)
        row['date'] = day_str
        row['timestamp'] = timestamp
        return row
