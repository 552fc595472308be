"""Tests for the conversation list projection."""

import itertools

import pytest
from pymongo.errors import AutoReconnect

from marketplace_chat.core.errors import PersistenceError
from marketplace_chat.schemas.conversation import CounterpartProfile
from marketplace_chat.services.aggregator import (
    ConversationIndex,
    aggregate_conversations,
    describe_conversations,
    order_conversations,
)
from marketplace_chat.services.queries import build_queries

from conftest import CUSTOMER_ID, OTHER_CUSTOMER_ID, PROVIDER_ID, PROVIDER_USER_ID, make_message


def test_customer_sees_own_message_as_read_provider_sees_it_unread(customer_queries, provider_queries):
    msg = make_message("m1", content="Is 3pm available?")

    mine = aggregate_conversations([msg], customer_queries)
    theirs = aggregate_conversations([msg], provider_queries)

    assert list(mine) == [PROVIDER_ID]
    assert mine[PROVIDER_ID].last_message == "Is 3pm available?"
    assert mine[PROVIDER_ID].unread_count == 0
    assert mine[PROVIDER_ID].counterpart_id == PROVIDER_USER_ID
    assert mine[PROVIDER_ID].counterpart_type == "provider"

    assert list(theirs) == [CUSTOMER_ID]
    assert theirs[CUSTOMER_ID].unread_count == 1
    assert theirs[CUSTOMER_ID].provider_ref == PROVIDER_ID
    assert theirs[CUSTOMER_ID].counterpart_type == "customer"


def test_provider_conversations_are_keyed_by_customer(provider_queries):
    messages = [
        make_message("a1", sender_id=CUSTOMER_ID, seconds=1),
        make_message("b1", sender_id=OTHER_CUSTOMER_ID, seconds=2),
        make_message("a2", sender_id=PROVIDER_USER_ID, receiver_id=CUSTOMER_ID, content="Yes", seconds=3),
    ]

    summaries = aggregate_conversations(messages, provider_queries)

    assert set(summaries) == {CUSTOMER_ID, OTHER_CUSTOMER_ID}
    assert summaries[CUSTOMER_ID].last_message == "Yes"
    assert summaries[CUSTOMER_ID].unread_count == 1
    assert summaries[OTHER_CUSTOMER_ID].unread_count == 1


def test_replayed_message_is_counted_once(provider_queries):
    index = ConversationIndex(provider_queries)
    msg = make_message("m1")

    for _ in range(3):
        index.apply(msg)

    assert index.get(CUSTOMER_ID).unread_count == 1
    assert index.total_unread() == 1


def test_older_message_does_not_replace_last_message(provider_queries):
    index = ConversationIndex(provider_queries)
    index.apply(make_message("new", content="latest", seconds=10))
    index.apply(make_message("old", content="earlier", seconds=5))

    summary = index.get(CUSTOMER_ID)
    assert summary.last_message == "latest"
    assert summary.last_message_id == "new"
    assert summary.unread_count == 2


def test_targeted_update_moves_conversation_to_front(provider_queries):
    index = ConversationIndex(provider_queries)
    index.rebuild(
        [
            make_message("a1", sender_id=CUSTOMER_ID, seconds=1),
            make_message("b1", sender_id=OTHER_CUSTOMER_ID, seconds=2),
        ]
    )
    assert [s.key for s in index.ordered()] == [OTHER_CUSTOMER_ID, CUSTOMER_ID]

    changed = index.apply(make_message("a2", sender_id=CUSTOMER_ID, content="ping", seconds=3))

    assert changed is True
    assert [s.key for s in index.ordered()] == [CUSTOMER_ID, OTHER_CUSTOMER_ID]
    assert index.get(CUSTOMER_ID).last_message == "ping"


def test_new_key_is_created_by_targeted_update(customer_queries):
    index = ConversationIndex(customer_queries)
    index.apply(make_message("m1", provider_id="prov-9", receiver_id="owner-9", seconds=1))
    index.apply(make_message("m2", seconds=2))

    assert [s.key for s in index.ordered()] == [PROVIDER_ID, "prov-9"]


def test_mark_read_never_increases_and_stale_copies_stay_read(provider_queries):
    index = ConversationIndex(provider_queries)
    first = make_message("m1", seconds=1)
    index.apply(first)
    index.apply(make_message("m2", seconds=2))
    assert index.get(CUSTOMER_ID).unread_count == 2

    index.mark_read(CUSTOMER_ID)
    assert index.get(CUSTOMER_ID).unread_count == 0

    # a poll result fetched before the read flip was persisted
    index.apply(first)
    assert index.get(CUSTOMER_ID).unread_count == 0

    index.apply(make_message("m3", seconds=3))
    assert index.get(CUSTOMER_ID).unread_count == 1


def test_read_copy_from_change_feed_decrements(provider_queries):
    index = ConversationIndex(provider_queries)
    msg = make_message("m1")
    index.apply(msg)

    index.apply(msg.as_read())
    index.apply(msg.as_read())

    assert index.get(CUSTOMER_ID).unread_count == 0


def test_rebuild_is_independent_of_arrival_order(provider_queries):
    messages = [
        make_message("a1", sender_id=CUSTOMER_ID, seconds=1),
        make_message("a2", sender_id=PROVIDER_USER_ID, receiver_id=CUSTOMER_ID, seconds=4, content="reply"),
        make_message("b1", sender_id=OTHER_CUSTOMER_ID, seconds=2),
        make_message("b2", sender_id=OTHER_CUSTOMER_ID, seconds=3, is_read=True),
    ]
    expected = aggregate_conversations(messages, provider_queries)

    for perm in itertools.permutations(messages):
        assert aggregate_conversations(list(perm), provider_queries) == expected


def test_order_conversations_newest_first(customer_queries):
    summaries = aggregate_conversations(
        [
            make_message("m1", provider_id="p-old", receiver_id="o1", seconds=1),
            make_message("m2", provider_id="p-new", receiver_id="o2", seconds=9),
        ],
        customer_queries,
    )

    assert [s.key for s in order_conversations(summaries.values())] == ["p-new", "p-old"]


def test_counterpart_profile_survives_rebuild(provider_queries):
    index = ConversationIndex(provider_queries)
    index.rebuild([make_message("m1")])

    assert index.describe(CUSTOMER_ID, CounterpartProfile(name="Carl", avatar_url="https://img/carl.png")) is True
    index.rebuild([make_message("m1"), make_message("m2", seconds=1)])

    summary = index.get(CUSTOMER_ID)
    assert summary.counterpart_name == "Carl"
    assert summary.counterpart_avatar_url == "https://img/carl.png"
    assert index.undescribed() == []


@pytest.mark.asyncio
async def test_describe_conversations_names_both_sides(customer_queries, provider_queries, directory):
    messages = [make_message("m1"), make_message("m2", sender_id=OTHER_CUSTOMER_ID, seconds=1)]
    theirs = ConversationIndex(provider_queries)
    theirs.rebuild(messages)
    mine = ConversationIndex(customer_queries)
    mine.rebuild(messages[:1])

    assert await describe_conversations(theirs, directory) is True
    assert await describe_conversations(mine, directory) is True

    assert theirs.get(CUSTOMER_ID).counterpart_name == "Carl"
    assert theirs.get(OTHER_CUSTOMER_ID).counterpart_name == "Customer"
    assert mine.get(PROVIDER_ID).counterpart_name == "Ana's Plumbing"
    # already described, nothing left to look up
    assert await describe_conversations(theirs, directory) is False


@pytest.mark.asyncio
async def test_provider_without_business_name_falls_back(customer_queries, directory, db):
    db["providers"].docs.append(
        {
            "_id": "prov-2",
            "user_id": "prov-user-2",
            "profile_picture_url": "https://img/prov-2.png",
            "service_type": "cleaning",
        }
    )
    index = ConversationIndex(customer_queries)
    index.rebuild([make_message("m1", receiver_id="prov-user-2", provider_id="prov-2")])

    await describe_conversations(index, directory)

    summary = index.get("prov-2")
    assert summary.counterpart_name == "Provider"
    assert summary.counterpart_avatar_url == "https://img/prov-2.png"
    assert summary.service_type == "cleaning"


@pytest.mark.asyncio
async def test_directory_outage_is_persistence_error(provider_queries, provider, directory, db):
    index = ConversationIndex(provider_queries)
    index.rebuild([make_message("m1")])
    db["profiles"].fail_with["find_one"] = AutoReconnect("down")
    db["providers"].fail_with["find_one"] = AutoReconnect("down")

    with pytest.raises(PersistenceError):
        await describe_conversations(index, directory)
    assert index.get(CUSTOMER_ID).counterpart_name is None

    with pytest.raises(PersistenceError):
        await build_queries(provider, directory)
