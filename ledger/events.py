"""Event catalogue and log decoding for the tracked ledger contracts.

Each tracked source (registry, staking, lending, marketplace, oracle) emits a
fixed set of events. A raw log is matched to its event by topic 0, the
keccak-256 hash of the canonical signature, and its parameters are decoded
from the indexed topics and the 32-byte data words. All parameters are static
``address``/``uint256`` values, so no dynamic ABI decoding is needed.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

NULL_ADDRESS = '0x' + '0' * 40

SOURCES = ('registry', 'staking', 'lending', 'marketplace', 'oracle')


class MalformedLogError(Exception):
    """Raised when a raw log cannot be decoded into a known event."""
    pass


@dataclass(frozen=True)
class EventSpec:
    """Static description of one contract event."""
    source: str
    name: str
    params: Tuple[Tuple[str, str], ...]
    topic: str

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(kind for _, kind in self.params)})"

    @property
    def param_names(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.params)


CATALOGUE: Tuple[EventSpec, ...] = (
    EventSpec(
        'registry', 'Transfer',
        (('from', 'address'), ('to', 'address'), ('tokenId', 'uint256')),
        '0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef'
    ),
    EventSpec(
        'staking', 'TokenStaked',
        (('user', 'address'), ('tokenId', 'uint256'), ('value', 'uint256')),
        '0x6173e4d2d9dd52aae0ed37afed3adcf924a490639b759ca93d32dc43366c17d2'
    ),
    EventSpec(
        'staking', 'TokenUnstaked',
        (('user', 'address'), ('tokenId', 'uint256')),
        '0xf0dbb2abe50e936f0d3720a39c0debe7706007b2c50286a913f24298e9be36ba'
    ),
    EventSpec(
        'lending', 'CollateralDeposited',
        (('user', 'address'), ('tokenId', 'uint256'), ('value', 'uint256')),
        '0xf4d587c98d234ca4d147061e6b5167e7f41ee17f11562a9f0b49570abece859e'
    ),
    EventSpec(
        'lending', 'CollateralWithdrawn',
        (('user', 'address'), ('tokenId', 'uint256')),
        '0xc30fcfbcaac9e0deffa719714eaa82396ff506a0d0d0eebe170830177288715d'
    ),
    EventSpec(
        'marketplace', 'ItemListed',
        (('seller', 'address'), ('tokenId', 'uint256'), ('price', 'uint256')),
        '0x94e7b934c857a9e3202e8ed9c1f3f96e396b7d2b5885930d2001abcb51ff58fa'
    ),
    EventSpec(
        'marketplace', 'ItemCanceled',
        (('seller', 'address'), ('tokenId', 'uint256')),
        '0xf86e54241e209ee4b38db8e64af9614b083d18f23c32f3293c8a87c6b8bf8943'
    ),
    EventSpec(
        'marketplace', 'ItemBought',
        (('buyer', 'address'), ('tokenId', 'uint256'), ('price', 'uint256')),
        '0xfe2094c9ff56716cb07edf0cff82da158f346cb3bb2d89703228ab4eb0c329b6'
    ),
    EventSpec(
        'oracle', 'PriceUpdated',
        (('tokenId', 'uint256'), ('price', 'uint256')),
        '0x945c1c4e99aa89f648fbfe3df471b916f719e16d960fcec0737d4d56bd696838'
    ),
)

_BY_TOPIC: Dict[Tuple[str, str], EventSpec] = {
    (spec.source, spec.topic): spec for spec in CATALOGUE
}


def events_for_source(source: str) -> List[EventSpec]:
    """Return the catalogue entries emitted by a source."""
    return [spec for spec in CATALOGUE if spec.source == source]


def find_spec(source: str, name: str) -> Optional[EventSpec]:
    for spec in events_for_source(source):
        if spec.name == name:
            return spec
    return None


@dataclass(frozen=True)
class LedgerEvent:
    """A decoded state-change notification from one source."""
    source: str
    name: str
    args: Dict[str, Any]
    tx_hash: str
    block_number: int
    log_index: int
    removed: bool = field(default=False, compare=False)

    @property
    def position(self) -> Tuple[int, int]:
        """Ordering key of the event within its source's history."""
        return (self.block_number, self.log_index)

    @property
    def token_id(self) -> Optional[int]:
        return self.args.get('tokenId')

    def describe(self) -> str:
        return f"{self.source}.{self.name} tx={self.tx_hash} block={self.block_number} log={self.log_index}"


# Indexed-parameter flags per (source, event name), loaded from ABI files
IndexedLayouts = Dict[Tuple[str, str], Tuple[bool, ...]]


def load_abi_layouts(abi_dir: Optional[str], sources: Iterable[str] = SOURCES) -> IndexedLayouts:
    """Read ``<abi_dir>/<source>.json`` files and collect indexed flags.

    Accepts either a plain ABI list or a build artifact with an ``abi`` key.
    Events whose input types don't match the catalogue signature are ignored
    with a warning.
    """
    layouts: IndexedLayouts = {}
    if not abi_dir:
        return layouts

    for source in sources:
        path = Path(abi_dir) / f"{source}.json"
        if not path.exists():
            logger.info(f"No ABI file for {source} at {path}, using default indexed layout")
            continue

        with open(path) as f:
            document = json.load(f)
        abi = document.get('abi', []) if isinstance(document, dict) else document

        for entry in abi:
            if entry.get('type') != 'event':
                continue
            spec = find_spec(source, entry.get('name'))
            if spec is None:
                continue
            inputs = entry.get('inputs', [])
            types = tuple(item.get('type') for item in inputs)
            if types != tuple(kind for _, kind in spec.params):
                logger.warning(
                    f"ABI for {source}.{spec.name} has inputs {types}, "
                    f"expected {spec.signature}; ignoring"
                )
                continue
            layouts[(source, spec.name)] = tuple(bool(item.get('indexed')) for item in inputs)

    return layouts


def _hex_int(value: Any, label: str) -> int:
    if isinstance(value, int):
        return value
    try:
        return int(value, 16)
    except (TypeError, ValueError):
        raise MalformedLogError(f"Invalid {label}: {value!r}")


def _decode_word(word: str, kind: str) -> Any:
    if kind == 'address':
        return '0x' + word[-40:].lower()
    return int(word, 16)


def _split_words(data: str) -> List[str]:
    body = data[2:] if data.startswith('0x') else data
    if len(body) % 64:
        raise MalformedLogError(f"Log data is not a whole number of 32-byte words ({len(body) // 2} bytes)")
    try:
        int(body or '0', 16)
    except ValueError:
        raise MalformedLogError("Log data is not hex")
    return [body[i:i + 64] for i in range(0, len(body), 64)]


def decode_log(source: str, log: Dict[str, Any], layouts: Optional[IndexedLayouts] = None) -> LedgerEvent:
    """Decode a raw JSON-RPC log object emitted by ``source``.

    Args:
        source: Name of the source the log was subscribed under
        log: Log object as returned by eth_subscribe/eth_getLogs
        layouts: Optional indexed-parameter flags from ABI files

    Returns:
        The decoded LedgerEvent

    Raises:
        MalformedLogError: If the log doesn't match a catalogue event
    """
    topics = [t.lower() for t in log.get('topics') or []]
    if not topics:
        raise MalformedLogError(f"Log from {source} has no topics")

    spec = _BY_TOPIC.get((source, topics[0]))
    if spec is None:
        raise MalformedLogError(f"Unknown event topic {topics[0]} for source {source}")

    tx_hash = log.get('transactionHash')
    if not tx_hash:
        raise MalformedLogError(f"{spec.name} log has no transactionHash")

    indexed_topics = topics[1:]
    words = _split_words(log.get('data') or '0x')

    layout = (layouts or {}).get((source, spec.name))
    if layout is None:
        # Without an ABI assume the leading parameters are the indexed ones
        count = len(indexed_topics)
        layout = tuple(i < count for i in range(len(spec.params)))

    if sum(layout) != len(indexed_topics) or len(layout) - sum(layout) != len(words):
        raise MalformedLogError(
            f"{spec.name} expects {sum(layout)} indexed topics and "
            f"{len(layout) - sum(layout)} data words, got {len(indexed_topics)} and {len(words)}"
        )

    args: Dict[str, Any] = {}
    topic_iter = iter(indexed_topics)
    word_iter = iter(words)
    for (name, kind), indexed in zip(spec.params, layout):
        raw = next(topic_iter) if indexed else next(word_iter)
        raw = raw[2:] if raw.startswith('0x') else raw
        if len(raw) != 64:
            raise MalformedLogError(f"{spec.name}.{name} is not a 32-byte word")
        try:
            args[name] = _decode_word(raw, kind)
        except ValueError:
            raise MalformedLogError(f"{spec.name}.{name} is not hex")

    return LedgerEvent(
        source=source,
        name=spec.name,
        args=args,
        tx_hash=tx_hash.lower(),
        block_number=_hex_int(log.get('blockNumber'), 'blockNumber'),
        log_index=_hex_int(log.get('logIndex'), 'logIndex'),
        removed=bool(log.get('removed', False)),
    )


__all__ = [
    'NULL_ADDRESS',
    'SOURCES',
    'CATALOGUE',
    'EventSpec',
    'LedgerEvent',
    'MalformedLogError',
    'IndexedLayouts',
    'events_for_source',
    'find_spec',
    'load_abi_layouts',
    'decode_log',
]
