"""Tests for the projector's event handlers against the in-memory store."""

import random
from decimal import Decimal

import pytest

from ledger.events import NULL_ADDRESS
from projector import HANDLERS, MalformedEventError, UnknownEventError, to_display_units
from store import ListingExistsError, TicketNotFoundError, TicketStatus, TransactionType
from conftest import ALICE, BOB, CAROL, make_event, mint, tx_hash


async def history(store, address):
    return await store.get_recent_transactions(address, limit=100)


def test_every_catalogue_event_has_a_handler():
    from ledger import CATALOGUE
    assert {(spec.source, spec.name) for spec in CATALOGUE} == set(HANDLERS)


def test_display_units_round_down():
    assert to_display_units(1_500_000, 6) == Decimal('1.5')
    assert to_display_units(1, 6) == Decimal('0.000001')
    assert str(to_display_units(2_000_000, 6)) == '2.000000'


@pytest.mark.asyncio
async def test_mint_creates_ticket_and_owner(projector, store):
    delta = await projector.apply(mint(7, ALICE, block=3, log_index=2))

    ticket = await store.get_ticket(7)
    assert ticket.owner_address == ALICE
    assert ticket.status == TicketStatus.IDLE
    assert ticket.price == 0
    assert await store.user_exists(ALICE)
    assert not await store.user_exists(NULL_ADDRESS)

    [tx] = await history(store, ALICE)
    assert tx.type == TransactionType.MINT
    assert tx.token_id == 7
    assert tx.amount is None

    assert delta.ticket.token_id == 7
    assert delta.transaction.type == TransactionType.MINT
    assert (await store.get_cursor('registry')).position == (3, 2)


@pytest.mark.asyncio
async def test_transfer_moves_ownership(projector, store, minted):
    await projector.apply(make_event('registry', 'Transfer', {'from': ALICE, 'to': BOB, 'tokenId': minted}))

    ticket = await store.get_ticket(minted)
    assert ticket.owner_address == BOB
    assert await store.user_exists(BOB)
    [tx] = await history(store, BOB)
    assert tx.type == TransactionType.TRANSFER
    assert await store.get_tickets_by_owner(ALICE) == []


@pytest.mark.asyncio
async def test_addresses_are_lowercased(projector, store):
    await projector.apply(mint(2, '0x' + 'AB' * 20))
    assert (await store.get_ticket(2)).owner_address == '0x' + 'ab' * 20


@pytest.mark.asyncio
async def test_stake_and_unstake(projector, store, minted):
    await projector.apply(make_event('staking', 'TokenStaked', {'user': ALICE, 'tokenId': minted, 'value': 2_500_000}))
    assert (await store.get_ticket(minted)).status == TicketStatus.STAKED

    await projector.apply(make_event('staking', 'TokenUnstaked', {'user': ALICE, 'tokenId': minted}))
    assert (await store.get_ticket(minted)).status == TicketStatus.IDLE

    unstake, stake, _ = await history(store, ALICE)
    assert stake.type == TransactionType.STAKE
    assert stake.amount == Decimal('2.5')
    assert unstake.type == TransactionType.UNSTAKE
    assert unstake.amount is None


@pytest.mark.asyncio
async def test_collateral_deposit_and_withdraw(projector, store, minted):
    await projector.apply(make_event('lending', 'CollateralDeposited', {'user': ALICE, 'tokenId': minted, 'value': 10_000_000}))
    assert (await store.get_ticket(minted)).status == TicketStatus.COLLATERALIZED

    await projector.apply(make_event('lending', 'CollateralWithdrawn', {'user': ALICE, 'tokenId': minted}))
    assert (await store.get_ticket(minted)).status == TicketStatus.IDLE

    withdraw, deposit, _ = await history(store, ALICE)
    assert deposit.type == TransactionType.DEPOSIT
    assert deposit.amount == Decimal('10')
    assert withdraw.type == TransactionType.WITHDRAW


@pytest.mark.asyncio
async def test_list_then_cancel(projector, store, minted):
    delta = await projector.apply(make_event('marketplace', 'ItemListed', {'seller': ALICE, 'tokenId': minted, 'price': 750}))
    assert (await store.get_ticket(minted)).status == TicketStatus.LISTED
    [listing] = await store.get_listings_by_seller(ALICE)
    assert listing.price == 750
    assert delta.listing == {'token_id': minted, 'seller_address': ALICE, 'price': 750}

    delta = await projector.apply(make_event('marketplace', 'ItemCanceled', {'seller': ALICE, 'tokenId': minted}))
    assert (await store.get_ticket(minted)).status == TicketStatus.IDLE
    assert await store.get_listings_by_seller(ALICE) == []
    assert delta.listing_removed

    cancel, listed, _ = await history(store, ALICE)
    assert listed.type == TransactionType.LIST
    assert cancel.type == TransactionType.CANCEL


@pytest.mark.asyncio
async def test_cancel_without_listing_is_not_an_error(projector, store, minted):
    delta = await projector.apply(make_event('marketplace', 'ItemCanceled', {'seller': ALICE, 'tokenId': minted}))
    assert (await store.get_ticket(minted)).status == TicketStatus.IDLE
    assert not delta.listing_removed


@pytest.mark.asyncio
async def test_item_bought_transfers_and_closes_listing(projector, store, minted):
    await projector.apply(make_event('marketplace', 'ItemListed', {'seller': ALICE, 'tokenId': minted, 'price': 3_000_000}))
    await projector.apply(make_event('marketplace', 'ItemBought', {'buyer': CAROL, 'tokenId': minted, 'price': 3_000_000}))

    ticket = await store.get_ticket(minted)
    assert ticket.owner_address == CAROL
    assert ticket.status == TicketStatus.IDLE
    assert await store.get_active_listings() == []

    [sale] = await history(store, CAROL)
    assert sale.type == TransactionType.SALE
    assert sale.amount == Decimal('3')


@pytest.mark.asyncio
async def test_leaving_listed_removes_listing(projector, store, minted):
    await projector.apply(make_event('marketplace', 'ItemListed', {'seller': ALICE, 'tokenId': minted, 'price': 1}))
    await projector.apply(make_event('staking', 'TokenStaked', {'user': ALICE, 'tokenId': minted, 'value': 1}))

    assert (await store.get_ticket(minted)).status == TicketStatus.STAKED
    assert await store.get_active_listings() == []


@pytest.mark.asyncio
async def test_price_update_records_no_history(projector, store, minted):
    delta = await projector.apply(make_event('oracle', 'PriceUpdated', {'tokenId': minted, 'price': 42_000_000}))

    ticket = await store.get_ticket(minted)
    assert ticket.price == 42_000_000
    assert ticket.status == TicketStatus.IDLE
    assert delta.ticket.price == 42_000_000
    assert delta.transaction is None
    assert await store.count_transactions() == 1


@pytest.mark.asyncio
async def test_redelivered_event_is_skipped(projector, store):
    event = mint(5, ALICE)
    assert await projector.apply(event) is not None
    assert await projector.apply(event) is None

    assert await store.count_transactions(event.tx_hash) == 1


@pytest.mark.asyncio
async def test_one_hash_can_carry_different_types(projector, store, minted):
    shared = tx_hash()
    await projector.apply(make_event('marketplace', 'ItemListed', {'seller': ALICE, 'tokenId': minted, 'price': 5}, tx=shared))
    await projector.apply(make_event('marketplace', 'ItemCanceled', {'seller': ALICE, 'tokenId': minted}, tx=shared, log_index=1))

    assert await store.count_transactions(shared) == 2


@pytest.mark.asyncio
async def test_batch_mint_in_one_transaction_keeps_every_ticket(projector, store):
    shared = tx_hash()
    first = mint(11, ALICE, tx=shared)
    second = mint(12, BOB, tx=shared, log_index=1)

    assert await projector.apply(first) is not None
    assert await projector.apply(second) is not None
    assert await projector.apply(second) is None

    assert (await store.get_ticket(11)).owner_address == ALICE
    assert (await store.get_ticket(12)).owner_address == BOB
    assert await store.count_transactions(shared) == 2


@pytest.mark.asyncio
async def test_second_listing_is_rejected_and_rolled_back(projector, store, minted):
    await projector.apply(make_event('marketplace', 'ItemListed', {'seller': ALICE, 'tokenId': minted, 'price': 100}))

    with pytest.raises(ListingExistsError):
        await projector.apply(make_event('marketplace', 'ItemListed', {'seller': ALICE, 'tokenId': minted, 'price': 999}, block=2))

    [(listing, ticket)] = await store.get_active_listings()
    assert listing.price == 100
    assert ticket.status == TicketStatus.LISTED
    assert await store.count_transactions() == 2
    assert (await store.get_cursor('marketplace')).position == (1, 0)


@pytest.mark.asyncio
async def test_event_for_unknown_ticket_leaves_no_trace(projector, store):
    with pytest.raises(TicketNotFoundError):
        await projector.apply(make_event('staking', 'TokenStaked', {'user': BOB, 'tokenId': 99, 'value': 1}))

    assert await store.get_ticket(99) is None
    assert not await store.user_exists(BOB)
    assert await store.count_transactions() == 0
    assert await store.get_cursor('staking') is None


@pytest.mark.asyncio
async def test_malformed_payload(projector, store):
    with pytest.raises(MalformedEventError):
        await projector.apply(make_event('staking', 'TokenStaked', {'user': ALICE, 'tokenId': 1}))

    with pytest.raises(MalformedEventError):
        await projector.apply(make_event('registry', 'Transfer', {'from': NULL_ADDRESS, 'to': ALICE, 'tokenId': -1}))

    with pytest.raises(MalformedEventError):
        await projector.apply(make_event('registry', 'Transfer', {'from': NULL_ADDRESS, 'to': 'alice', 'tokenId': 1}))


@pytest.mark.asyncio
async def test_unknown_event(projector):
    with pytest.raises(UnknownEventError):
        await projector.apply(make_event('oracle', 'Borrowed', {'tokenId': 1}))


@pytest.mark.asyncio
async def test_transaction_timestamps_come_from_clock(projector, store, clock):
    await projector.apply(mint(3, BOB))
    [tx] = await history(store, BOB)
    assert tx.timestamp == clock.now


@pytest.mark.asyncio
async def test_round_trips_preserve_owner_and_price(projector, store, minted):
    await projector.apply(make_event('oracle', 'PriceUpdated', {'tokenId': minted, 'price': 50_000_000}))
    await projector.apply(make_event('staking', 'TokenStaked', {'user': ALICE, 'tokenId': minted, 'value': 1}))
    await projector.apply(make_event('staking', 'TokenUnstaked', {'user': ALICE, 'tokenId': minted}))
    await projector.apply(make_event('marketplace', 'ItemListed', {'seller': ALICE, 'tokenId': minted, 'price': 50_000_000}))
    await projector.apply(make_event('marketplace', 'ItemCanceled', {'seller': ALICE, 'tokenId': minted}))

    ticket = await store.get_ticket(minted)
    assert ticket.owner_address == ALICE
    assert ticket.status == TicketStatus.IDLE
    assert ticket.price == 50_000_000


def _random_event(rng, token_id):
    user = rng.choice((ALICE, BOB))
    choices = [
        ('registry', 'Transfer', {'from': ALICE, 'to': user, 'tokenId': token_id}),
        ('staking', 'TokenStaked', {'user': user, 'tokenId': token_id, 'value': rng.randrange(10 ** 7)}),
        ('staking', 'TokenUnstaked', {'user': user, 'tokenId': token_id}),
        ('lending', 'CollateralDeposited', {'user': user, 'tokenId': token_id, 'value': 1}),
        ('lending', 'CollateralWithdrawn', {'user': user, 'tokenId': token_id}),
        ('marketplace', 'ItemListed', {'seller': user, 'tokenId': token_id, 'price': rng.randrange(1, 10 ** 7)}),
        ('marketplace', 'ItemCanceled', {'seller': user, 'tokenId': token_id}),
        ('marketplace', 'ItemBought', {'buyer': user, 'tokenId': token_id, 'price': 1}),
        ('oracle', 'PriceUpdated', {'tokenId': token_id, 'price': rng.randrange(10 ** 7)}),
    ]
    return make_event(*rng.choice(choices))


@pytest.mark.asyncio
async def test_listing_exists_only_while_listed(projector, store):
    rng = random.Random(7)
    tokens = (1, 2, 3)
    for token_id in tokens:
        await projector.apply(mint(token_id))

    for _ in range(300):
        try:
            await projector.apply(_random_event(rng, rng.choice(tokens)))
        except ListingExistsError:
            pass

        listed = set()
        for token_id in tokens:
            if (await store.get_ticket(token_id)).status == TicketStatus.LISTED:
                listed.add(token_id)
        assert {listing.token_id for listing, _ in await store.get_active_listings()} == listed
