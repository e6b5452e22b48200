import json
from datetime import datetime, timezone

import pytest

from eventstore.api import (
    Anonymizable,
    EventsArgs,
    IdempotentEvent,
    InitArgs,
    Principal,
    PushEventsArgs,
)
from eventstore.canister import EventStoreCanister, State, Unauthorized
from eventstore.dapp_radar import IntegrationsData
from eventstore.store import anonymize

PUSHER = Principal(b"\x01\x02\x03\x04")
READER = Principal(b"\x05\x06\x07\x08")
STRANGER = Principal(b"\x09\x0a\x0b\x0c")
SALT = bytes(range(1, 33))


def make_canister(time_granularity=None):
    canister = EventStoreCanister(
        InitArgs(
            push_events_whitelist=[PUSHER],
            read_events_whitelist=[READER],
            time_granularity=time_granularity,
        )
    )
    canister.initialize_salt(SALT)
    return canister


def event(key, timestamp, name="evt", user=None, source=None, payload=b""):
    return IdempotentEvent(
        idempotency_key=key,
        name=name,
        timestamp=timestamp,
        user=user,
        source=source,
        payload=payload,
    )


def millis(*args):
    return int(datetime(*args, tzinfo=timezone.utc).timestamp()) * 1000


def test_push_then_read_events_succeeds():
    canister = make_canister()
    canister.push_events(
        PUSHER,
        PushEventsArgs([event(i + 100, i, name=f"e{i}", payload=bytes([i] * 32)) for i in range(10)]),
        now=1,
    )
    response = canister.events(READER, EventsArgs(start=0, length=5))
    assert len(response.events) == 5
    assert response.events[0].index == 0
    assert response.events[-1].index == 4
    assert response.latest_event_index == 9
    assert response.events[3].name == "e3"
    assert response.events[3].payload == bytes([3] * 32)


@pytest.mark.parametrize(
    "users,sources", [(True, True), (False, True), (True, False), (False, False)]
)
def test_users_and_source_can_be_anonymized(users, sources):
    canister = make_canister()
    canister.push_events(
        PUSHER,
        PushEventsArgs(
            [
                event(
                    1,
                    1000,
                    user=Anonymizable("12345", users),
                    source=Anonymizable("67890", sources),
                )
            ]
        ),
        now=1,
    )
    stored = canister.events(READER, EventsArgs(0, 1)).events.pop()
    if users:
        assert len(stored.user) == 32
        assert stored.user == anonymize("12345", SALT)
    else:
        assert stored.user == "12345"
    if sources:
        assert len(stored.source) == 32
        assert stored.source == anonymize("67890", SALT)
    else:
        assert stored.source == "67890"


@pytest.mark.parametrize(
    "granularity,expected",
    [
        (None, [1001, 2150, 3299]),
        (100, [1000, 2100, 3200]),
        (1000, [1000, 2000, 3000]),
    ],
)
def test_time_granularity_applied_correctly(granularity, expected):
    canister = make_canister(granularity)
    canister.push_events(
        PUSHER,
        PushEventsArgs([event(1, 1001), event(2, 2150), event(3, 3299)]),
        now=1,
    )
    events = canister.events(READER, EventsArgs(0, 3)).events
    assert [e.timestamp for e in events] == expected


def test_granularity_does_not_modify_callers_event():
    canister = make_canister(100)
    original = event(1, 1001)
    canister.push_events(PUSHER, PushEventsArgs([original]), now=1)
    assert original.timestamp == 1001


def test_duplicate_idempotency_keys_are_stored_once():
    canister = make_canister()
    canister.push_events(PUSHER, PushEventsArgs([event(7, 1), event(7, 2)]), now=10)
    canister.push_events(PUSHER, PushEventsArgs([event(7, 3)]), now=20)
    response = canister.events(READER, EventsArgs(0, 10))
    assert len(response.events) == 1
    assert response.latest_event_index == 0


def test_push_requires_whitelisted_caller():
    canister = make_canister()
    with pytest.raises(Unauthorized, match="Caller is not authorized to push events"):
        canister.push_events(READER, PushEventsArgs([event(1, 1)]), now=1)
    assert canister.events(READER, EventsArgs(0, 1)).latest_event_index is None


def test_read_requires_whitelisted_caller():
    canister = make_canister()
    with pytest.raises(Unauthorized, match="Caller is not authorized to read events"):
        canister.events(STRANGER, EventsArgs(0, 1))


def test_push_before_salt_initialized_fails():
    canister = EventStoreCanister(InitArgs([PUSHER], [READER], None))
    with pytest.raises(RuntimeError):
        canister.push_events(PUSHER, PushEventsArgs([event(1, 1)]), now=1)


def test_salt_can_only_be_set_once():
    canister = make_canister()
    with pytest.raises(RuntimeError):
        canister.initialize_salt(SALT)


def test_push_without_explicit_time():
    canister = make_canister()
    canister.push_events(PUSHER, PushEventsArgs([event(1, 5)]))
    assert canister.events(READER, EventsArgs(0, 1)).events[0].timestamp == 5


def test_whitelisted_principals():
    canister = make_canister()
    whitelisted = canister.whitelisted_principals()
    assert whitelisted.push == [PUSHER]
    assert whitelisted.read == [READER]


def test_state_permission_checks():
    state = State([PUSHER], [READER], None)
    assert state.can_push_events(PUSHER)
    assert not state.can_push_events(READER)
    assert state.can_read_events(READER)
    assert not state.can_read_events(PUSHER)


def test_upgrade_round_trip_preserves_state():
    canister = make_canister(100)
    canister.push_events(
        PUSHER,
        PushEventsArgs([event(1, 1050, user=Anonymizable("bob", True)), event(2, 2000)]),
        now=1,
    )
    before = canister.events(READER, EventsArgs(0, 10))
    data = canister.pre_upgrade()

    with pytest.raises(RuntimeError):
        canister.events(READER, EventsArgs(0, 1))

    restored = EventStoreCanister.post_upgrade(data)
    after = restored.events(READER, EventsArgs(0, 10))
    assert after == before
    assert restored.whitelisted_principals().push == [PUSHER]

    # The deduper and salt survive the upgrade.
    restored.push_events(
        PUSHER,
        PushEventsArgs([event(1, 3000), event(3, 3000, user=Anonymizable("bob", True))]),
        now=2,
    )
    events = restored.events(READER, EventsArgs(0, 10)).events
    assert len(events) == 3
    assert events[2].user == events[0].user


def test_post_upgrade_populates_lagging_integrations():
    canister = make_canister()
    canister.push_events(
        PUSHER,
        PushEventsArgs([event(i, millis(2024, 1, 2, 3), user=Anonymizable("alice")) for i in range(3)]),
        now=1,
    )
    canister.state.integrations_data = IntegrationsData()
    assert canister.state.integrations_data.next_event_index() == 0

    restored = EventStoreCanister.post_upgrade(canister.pre_upgrade())
    assert restored.state.integrations_data.next_event_index() == 3


def test_http_request_unknown_path_is_404():
    canister = make_canister()
    assert canister.http_request("/").status_code == 404
    assert canister.http_request("/other/path").status_code == 404
    assert canister.http_request("/dapp-radar/aggregated-data/2024-01-02/weekly").status_code == 404
    assert canister.http_request("/dapp-radar/aggregated-data/2024-01/daily").status_code == 404
    assert canister.http_request("/dapp-radar/aggregated-data/x-01-02/daily").status_code == 404
    assert canister.http_request("/dapp-radar/other/2024-01-02/daily").status_code == 404


def _push_radar_events(canister):
    canister.push_events(
        PUSHER,
        PushEventsArgs(
            [
                event(1, millis(2024, 1, 2, 3), user=Anonymizable("alice")),
                event(2, millis(2024, 1, 2, 3, 30), user=Anonymizable("alice")),
                event(3, millis(2024, 1, 2, 5), user=Anonymizable("bob")),
            ]
        ),
        now=1,
    )


def test_http_request_daily():
    canister = make_canister()
    _push_radar_events(canister)
    response = canister.http_request("/dapp-radar/aggregated-data/2024-01-02/daily?page=1")
    assert response.status_code == 200
    assert ("content-type", "application/json") in response.headers
    assert ("content-length", str(len(response.body))) in response.headers
    body = json.loads(response.body)
    assert body["pageCount"] == 1
    assert body["results"] == [
        {"user": "alice", "transactions": 2},
        {"user": "bob", "transactions": 1},
    ]


def test_http_request_hourly():
    canister = make_canister()
    _push_radar_events(canister)
    response = canister.http_request("/dapp-radar/aggregated-data/2024-01-02/hourly?page=1")
    body = json.loads(response.body)
    assert body["results"][0] == {
        "dateTime": "2024-01-02 03:00:00",
        "user": "alice",
        "transactions": 2,
    }
    assert len(body["results"]) == 2


def test_http_request_page_zero_returns_no_results():
    canister = make_canister()
    _push_radar_events(canister)
    body = json.loads(canister.http_request("/dapp-radar/aggregated-data/2024-01-02/daily").body)
    assert body["results"] == []
    assert body["pageCount"] == 1


def test_http_request_invalid_page_raises():
    canister = make_canister()
    with pytest.raises(ValueError):
        canister.http_request("/dapp-radar/aggregated-data/2024-01-02/daily?page=abc")