"""
Collaborator interfaces for list and customer data

ListSourceProvider delivers already-decoded watchlist records; fetching
and wire-format parsing happen upstream. CustomerSource delivers the
customer population as a restartable sequence that can be consumed in
fixed-size batches.
"""

import csv
import json
import logging
from abc import ABC, abstractmethod
from itertools import islice
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Sequence, TypeVar

from watchlist import CustomerIdentity, RawListRecord

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ListSourceError(Exception):
    """Raised when a list source cannot deliver its records"""
    pass


class CustomerSourceError(Exception):
    """Raised when the customer source cannot be read"""
    pass


def batched(items: Iterable[T], size: int) -> Iterator[List[T]]:
    """Yield lists of at most ``size`` items"""
    if size < 1:
        raise ValueError("batch size must be positive")
    iterator = iter(items)
    while True:
        batch = list(islice(iterator, size))
        if not batch:
            return
        yield batch


class ListSourceProvider(ABC):
    """Supplies decoded RawListRecords"""

    @abstractmethod
    def records(self) -> Iterable[RawListRecord]:
        """Lazy, finite sequence of raw records"""


class CustomerSource(ABC):
    """Supplies CustomerIdentity records; every call starts from the beginning"""

    @abstractmethod
    def iter_customers(self) -> Iterator[CustomerIdentity]:
        """Lazy sequence over the whole customer population"""

    def batches(self, size: int) -> Iterator[List[CustomerIdentity]]:
        """Customer population in fixed-size batches"""
        return batched(self.iter_customers(), size)


class IterableListSource(ListSourceProvider):
    """List source over records already held in memory"""

    def __init__(self, records: Iterable[RawListRecord]):
        self._records = list(records)

    def records(self) -> Iterator[RawListRecord]:
        return iter(self._records)


class JsonLinesListSource(ListSourceProvider):
    """
    List source reading one JSON object per line.

    Each object carries the RawListRecord fields (``primary_name``,
    ``alt_names``, ``address``, ``city``, ``country``, ``category``,
    ``remarks``). Blank lines are ignored.
    """

    def __init__(self, path: str, encoding: str = 'utf-8'):
        self.path = Path(path)
        self.encoding = encoding

    def records(self) -> Iterator[RawListRecord]:
        if not self.path.exists():
            raise ListSourceError(f"List file not found: {self.path}")

        with open(self.path, 'r', encoding=self.encoding) as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError as e:
                    raise ListSourceError(
                        f"Invalid JSON on line {line_number} of {self.path.name}: {e}"
                    ) from e
                if not isinstance(data, dict):
                    raise ListSourceError(
                        f"Line {line_number} of {self.path.name} is not a JSON object"
                    )
                yield RawListRecord.from_dict(data)


class IterableCustomerSource(CustomerSource):
    """Customer source over an in-memory sequence"""

    def __init__(self, customers: Sequence[CustomerIdentity]):
        self._customers = list(customers)

    def iter_customers(self) -> Iterator[CustomerIdentity]:
        return iter(self._customers)

    def __len__(self) -> int:
        return len(self._customers)


class CsvCustomerSource(CustomerSource):
    """
    Customer source backed by a CSV export of the system of record.

    Required columns: ``customer_id`` and ``name``. Optional columns:
    ``address``, ``city``, ``country``. The file is re-opened on every
    iteration, so the source is restartable.
    """

    REQUIRED_COLUMNS = ('customer_id', 'name')

    def __init__(self, path: str, encoding: str = 'utf-8-sig', delimiter: str = ','):
        self.path = Path(path)
        self.encoding = encoding
        self.delimiter = delimiter

    def iter_customers(self) -> Iterator[CustomerIdentity]:
        if not self.path.exists():
            raise CustomerSourceError(f"Customer file not found: {self.path}")

        with open(self.path, 'r', encoding=self.encoding, newline='') as f:
            reader = csv.DictReader(f, delimiter=self.delimiter)
            columns = [c.strip().lower() for c in (reader.fieldnames or [])]
            missing = [c for c in self.REQUIRED_COLUMNS if c not in columns]
            if missing:
                raise CustomerSourceError(
                    f"Customer file {self.path.name} is missing columns: {', '.join(missing)}"
                )
            reader.fieldnames = columns

            for row in reader:
                yield CustomerIdentity(
                    customer_id=(row.get('customer_id') or '').strip(),
                    name=row.get('name') or '',
                    address=_optional(row.get('address')),
                    city=_optional(row.get('city')),
                    country=_optional(row.get('country')),
                )


def _optional(value: Optional[str]) -> Optional[str]:
    value = (value or '').strip()
    return value or None
