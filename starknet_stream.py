"""
Starknet Event Stream - polls a JSON-RPC node for xSTRK Transfer events
Yields decoded blocks: {'header': {...}, 'events': [...]} in block order
"""
from collections import defaultdict
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Optional

import aiohttp
from loguru import logger

import config
from utils import retry_with_backoff, standardise


class StreamError(Exception):
    """RPC node returned an error or data we cannot line up"""
    pass


def _event_key(tx_hash, from_address, keys, data) -> tuple:
    return (
        standardise(tx_hash),
        standardise(from_address),
        tuple(standardise(k) for k in keys),
        tuple(standardise(d) for d in data),
    )


class StarknetEventStream:
    """Transfer events of one contract, read through starknet_getEvents"""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        contract_address: Optional[str] = None,
        event_selector: Optional[str] = None,
        chunk_size: Optional[int] = None,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.rpc_url = rpc_url or config.RPC_URL
        self.contract_address = standardise(contract_address or config.XSTRK_CONTRACT_ADDRESS)
        self.event_selector = standardise(event_selector or config.TRANSFER_EVENT_SELECTOR)
        self.chunk_size = chunk_size or config.EVENTS_CHUNK_SIZE
        self.timeout = aiohttp.ClientTimeout(total=config.RPC_TIMEOUT)
        self.session = session
        self._owns_session = session is None
        self._request_id = 0

    async def __aenter__(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None

    async def _post(self, payload: Dict) -> Dict:
        async with self.session.post(self.rpc_url, json=payload, timeout=self.timeout) as resp:
            resp.raise_for_status()
            return await resp.json()

    async def _rpc(self, method: str, params) -> Dict:
        """
        One JSON-RPC call, transport errors retried

        Raises:
            StreamError: retries exhausted or node answered with an error
        """
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params,
        }

        data = await retry_with_backoff(
            lambda: self._post(payload),
            max_attempts=3,
            base_delay=1.0,
            label=f"rpc {method}"
        )
        if data is None:
            raise StreamError(f"{method}: RPC node unreachable")
        if data.get('error'):
            raise StreamError(f"{method}: {data['error']}")
        return data.get('result')

    async def block_number(self) -> int:
        """Latest accepted block"""
        return int(await self._rpc('starknet_blockNumber', []))

    async def get_events(self, from_block: int, to_block: int) -> List[Dict]:
        """All matching events in [from_block, to_block], following continuation tokens"""
        events = []
        token = None

        while True:
            event_filter = {
                "from_block": {"block_number": from_block},
                "to_block": {"block_number": to_block},
                "address": self.contract_address,
                "keys": [[self.event_selector]],
                "chunk_size": self.chunk_size,
            }
            if token:
                event_filter["continuation_token"] = token

            page = await self._rpc('starknet_getEvents', {"filter": event_filter})
            events.extend(page.get('events', []))
            token = page.get('continuation_token')
            if not token:
                return events

    async def get_block_with_receipts(self, block_number: int) -> Dict:
        return await self._rpc(
            'starknet_getBlockWithReceipts',
            {"block_id": {"block_number": block_number}}
        )

    @staticmethod
    def decode_block(block: Dict, matched: List[Dict]) -> Dict:
        """
        Attach header + transaction/event positions to the matched events

        eventIndex counts every event emitted in the block, in transaction
        order, so it is stable across re-polls.
        """
        positions = defaultdict(list)
        event_index = 0
        for tx_index, item in enumerate(block.get('transactions', [])):
            receipt = item['receipt']
            tx_hash = receipt['transaction_hash']
            for ev in receipt.get('events', []):
                key = _event_key(tx_hash, ev['from_address'], ev['keys'], ev.get('data', []))
                positions[key].append((tx_index, event_index))
                event_index += 1

        events = []
        for ev in matched:
            key = _event_key(ev['transaction_hash'], ev['from_address'], ev['keys'], ev.get('data', []))
            if not positions.get(key):
                raise StreamError(
                    f"Event of tx {ev['transaction_hash']} not found in block {block.get('block_number')}"
                )
            tx_index, idx = positions[key].pop(0)
            events.append({
                'keys': ev['keys'],
                'data': ev.get('data', []),
                'transactionIndex': tx_index,
                'eventIndex': idx,
                'transactionHash': ev['transaction_hash'],
            })

        return {
            'header': {
                'blockNumber': block.get('block_number'),
                'timestamp': datetime.fromtimestamp(block['timestamp'], tz=timezone.utc),
            },
            'events': events,
        }

    async def blocks(self, from_block: int, to_block: int) -> AsyncIterator[Dict]:
        """Decoded blocks that contain at least one matching event, ascending"""
        events = await self.get_events(from_block, to_block)

        by_block = defaultdict(list)
        for ev in events:
            if ev.get('block_number') is None:
                continue  # pending
            by_block[ev['block_number']].append(ev)

        logger.debug(f"   {len(events)} events in {len(by_block)} blocks ({from_block}-{to_block})")

        for block_number in sorted(by_block):
            block = await self.get_block_with_receipts(block_number)
            yield self.decode_block(block, by_block[block_number])
