from decimal import Decimal
from pathlib import Path

from pydantic import BaseModel
from pytest import raises

from daolens.cancellation import CancellationToken
from daolens.exceptions import InvalidDataError
from daolens.exceptions import RequestCancelledError
from daolens.ledger import normalize_account
from daolens.ledger import normalize_int
from daolens.ledger import normalize_votes
from daolens.models import ZERO_ACCOUNT
from daolens.models import is_self_delegation
from daolens.models import to_account
from daolens.utils import iter_block_ranges
from daolens.utils import json_dumps
from daolens.utils import parse_object
from daolens.utils import write


class SomeModel(BaseModel):
    name: str
    weight: Decimal


async def test_iter_block_ranges() -> None:
    assert list(iter_block_ranges(0, 9, 5)) == [(0, 4), (5, 9)]
    assert list(iter_block_ranges(0, 10, 5)) == [(0, 4), (5, 9), (10, 10)]
    assert list(iter_block_ranges(7, 7, 5)) == [(7, 7)]
    assert list(iter_block_ranges(8, 7, 5)) == []


async def test_write(tmp_path: Path) -> None:
    path = tmp_path / 'nested' / 'file.json'
    assert write(path, '{}')
    assert not write(path, '[]')
    assert path.read_text() == '{}'
    assert write(path, b'[]', overwrite=True)
    assert path.read_text() == '[]'


async def test_parse_object() -> None:
    obj = parse_object(SomeModel, {'name': 'a', 'weight': '1.5'})
    assert obj.weight == Decimal('1.5')

    with raises(InvalidDataError):
        parse_object(SomeModel, {'name': 'a'})
    with raises(InvalidDataError):
        parse_object(SomeModel, None)

    assert json_dumps({'weight': obj.weight}, option=None) == b'{"weight":"1.5"}'


async def test_accounts() -> None:
    checksummed = '0xc00e94Cb662C3520282E6f5717214004A7f26888'
    assert to_account(checksummed) == checksummed.lower()
    with raises(ValueError):
        to_account('0x1234')

    assert normalize_account(None) is None
    assert normalize_account('') is None
    assert normalize_account(ZERO_ACCOUNT) is None
    assert normalize_account('0x' + '00' * 12 + 'ab' * 20) == '0x' + 'ab' * 20
    assert normalize_account(bytes.fromhex('ab' * 20)) == '0x' + 'ab' * 20
    assert normalize_account(0xAB) == '0x' + '00' * 19 + 'ab'

    assert is_self_delegation('0x' + 'ab' * 20, '0x' + 'AB' * 20)
    assert is_self_delegation('0x' + 'ab' * 20, ZERO_ACCOUNT)
    assert is_self_delegation('0x' + 'ab' * 20, None)
    assert not is_self_delegation('0x' + 'ab' * 20, '0x' + 'cd' * 20)


async def test_normalize_numbers() -> None:
    assert normalize_int('0x10') == 16
    assert normalize_int('10') == 10
    assert normalize_int(b'\x01\x00') == 256
    with raises(ValueError):
        normalize_int(True)

    votes = normalize_votes({'yesVotes': 5, 'noVotes': '0x2'})
    assert (votes.for_votes, votes.against_votes, votes.abstain_votes) == (5, 2, 0)
    assert normalize_votes((1, 2)).total == 3


async def test_cancellation_token() -> None:
    parent = CancellationToken(name='view')
    child = parent.child('delegation')
    sibling = parent.child()

    child.cancel()
    assert child.cancelled
    assert not parent.cancelled
    assert not sibling.cancelled

    parent.cancel()
    assert sibling.cancelled
    with raises(RequestCancelledError):
        sibling.raise_if_cancelled()


async def test_cancellation_callbacks() -> None:
    parent = CancellationToken(name='view')
    child = parent.child()
    fired: list[str] = []

    child.on_cancel(lambda: fired.append('child'))
    remove = child.on_cancel(lambda: fired.append('removed'))
    remove()
    parent.cancel()
    parent.cancel()

    assert fired == ['child']
    child.on_cancel(lambda: fired.append('late'))
    assert fired == ['child', 'late']
