"""
Shared helpers - address canonicalization, amount formatting, dates, retry
"""
import asyncio
import calendar
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Iterator, Optional, Union

import aiohttp
from loguru import logger


def standardise(address: Union[str, int, None]) -> str:
    """
    Canonical hex form of a Starknet address / felt

    Accepts ints, decimal strings and 0x-prefixed hex strings. Falsy values
    are treated as 0. Output is lowercase, 0x-prefixed, no zero padding,
    so '0x00abc', '0xABC' and '2748' all map to '0xabc'.

    Raises:
        ValueError: value is not a decimal or hex number
    """
    value = address if address else 0

    if isinstance(value, int):
        number = value
    else:
        text = str(value).strip()
        if text.lower().startswith('0x'):
            number = int(text, 16)
        else:
            number = int(text, 10)

    if number < 0:
        raise ValueError(f"Address cannot be negative: {address}")

    return hex(number)


def format_amount(value: float) -> str:
    """
    Render a float the way a JavaScript Number prints itself

    Stored amounts have always been written as Number.toString() output
    ("1", "0.5", "1e-7", "1.5e+21"), so keep that format byte for byte.
    """
    if value != value:
        return 'NaN'
    if value in (float('inf'), float('-inf')):
        return 'Infinity' if value > 0 else '-Infinity'
    if value == 0:
        return '0'

    sign = '-' if value < 0 else ''

    # repr() gives the shortest round-tripping digits, same as JS
    _, digit_tuple, exponent = Decimal(repr(abs(value))).as_tuple()
    digits = ''.join(str(d) for d in digit_tuple).rstrip('0')
    exponent += len(digit_tuple) - len(digits)

    k = len(digits)
    n = k + exponent  # value = 0.digits * 10^n

    if k <= n <= 21:
        return sign + digits + '0' * (n - k)
    if 0 < n <= 21:
        return sign + digits[:n] + '.' + digits[n:]
    if -6 < n <= 0:
        return sign + '0.' + '0' * (-n) + digits

    e = n - 1
    mantissa = digits[0] + ('.' + digits[1:] if k > 1 else '')
    return f"{sign}{mantissa}e{'+' if e >= 0 else '-'}{abs(e)}"


def parse_date(value: Union[str, date, datetime]) -> date:
    """Accept 'YYYY-MM-DD', date or datetime"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(value, '%Y-%m-%d').date()


def date_range(start: date, end: date) -> Iterator[date]:
    """Every calendar day in [start, end], ascending. Empty if end < start."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def day_timestamp(day: date) -> int:
    """Unix seconds at 00:00 UTC of the given day"""
    return calendar.timegm(day.timetuple())


async def retry_with_backoff(
    func: Callable,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    exponential: bool = True,
    exceptions: tuple = (aiohttp.ClientError, asyncio.TimeoutError),
    label: str = 'request'
) -> Optional[Any]:
    """
    Retry async function with backoff

    Args:
        func: Async function to retry (no arguments)
        max_attempts: Total attempts, including the first one
        base_delay: Delay before the second attempt (seconds)
        max_delay: Cap for exponential delays
        exponential: Double the delay after each failure; False = fixed delay
        exceptions: Tuple of exceptions to catch and retry
        label: Used in log lines

    Returns:
        Result from func() or None if all attempts fail
    """
    for attempt in range(max_attempts):
        try:
            return await func()
        except exceptions as e:
            if attempt == max_attempts - 1:
                logger.error(f"   ❌ {label}: all {max_attempts} attempts failed: {e!r}")
                return None

            if exponential:
                delay = min(base_delay * (2 ** attempt), max_delay)
            else:
                delay = base_delay
            logger.warning(
                f"   ⏳ {label}: attempt {attempt + 1}/{max_attempts} failed ({e!r}), "
                f"retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

    return None
