import pytest

from rank_gateway.access import Tier
from rank_gateway.audit import AuditDispatcher
from rank_gateway.errors import Forbidden, InvalidTransition, MissingParameter, NotFound
from rank_gateway.limiter import ActionRateLimiter
from rank_gateway.ranking import RankAction, RankChangeOrchestrator, next_rank
from rank_gateway.store import open_store
from tests.conftest import GROUP_ID, FakeGroupClient, RecordingSink

RANKS = [0, 10, 50, 100]
IP = "198.51.100.4"


def test_next_rank_boundaries():
    with pytest.raises(InvalidTransition):
        next_rank(RANKS, 100, RankAction.PROMOTE)
    with pytest.raises(InvalidTransition):
        next_rank(RANKS, 0, RankAction.DEMOTE)
    assert next_rank(RANKS, 10, RankAction.PROMOTE) == 50
    assert next_rank(RANKS, 10, RankAction.DEMOTE) == 0


def test_next_rank_handles_unsorted_input_and_unlisted_current():
    assert next_rank([100, 0, 50, 10], 30, RankAction.PROMOTE) == 50
    assert next_rank([100, 0, 50, 10], 30, RankAction.DEMOTE) == 10


def test_next_rank_setrank():
    assert next_rank(RANKS, 10, RankAction.SETRANK, 100) == 100
    with pytest.raises(MissingParameter):
        next_rank(RANKS, 10, RankAction.SETRANK)


@pytest.fixture
def client():
    return FakeGroupClient(ranks={100: 10, 200: 100, 300: 0}, usernames={100: "Builderman"})


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def orchestrator(client, sink):
    return RankChangeOrchestrator(client, GROUP_ID, open_store(), ActionRateLimiter(limit=15), AuditDispatcher(sink))


@pytest.mark.asyncio
async def test_promote_by_username(orchestrator, client, sink):
    result = await orchestrator.change_rank(Tier.MAINTAINER, RankAction.PROMOTE, "builderman", 7, caller_ip=IP)

    assert result.user_id == 100
    assert (result.previous_rank, result.new_rank, result.role_name) == (10, 50, "Officer")
    assert result.changed is True
    assert result.message == "User Builderman promoted to Officer (Rank 50)"
    assert client.mutations() == [("set_rank", 100, 51)]

    await orchestrator.audit.drain()
    assert sink.messages == ["User Builderman promoted to Officer (Rank 50) by trainer 7 via maintainer."]


@pytest.mark.asyncio
async def test_demote_numeric_id(orchestrator, client):
    result = await orchestrator.change_rank(Tier.SECONDARY, RankAction.DEMOTE, "100", "7", caller_ip=IP)
    assert result.new_rank == 0
    assert client.mutations() == [("set_rank", 100, 1)]


@pytest.mark.asyncio
async def test_promote_at_top_fails(orchestrator, client):
    with pytest.raises(InvalidTransition):
        await orchestrator.change_rank(Tier.MAINTAINER, RankAction.PROMOTE, 200, 7, caller_ip=IP)
    assert client.mutations() == []


@pytest.mark.asyncio
async def test_spectator_rejected_before_any_external_call(orchestrator, client):
    for action in RankAction:
        with pytest.raises(Forbidden) as exc:
            await orchestrator.change_rank(Tier.SPECTATOR, action, 100, 7, rank=50, caller_ip=IP)
        assert exc.value.reason == "read_only_tier"
    assert client.calls == []
    assert orchestrator.limiter.counter(IP) is None


@pytest.mark.asyncio
async def test_missing_parameters(orchestrator, client):
    with pytest.raises(MissingParameter):
        await orchestrator.change_rank(Tier.MAINTAINER, RankAction.PROMOTE, None, 7, caller_ip=IP)
    with pytest.raises(MissingParameter):
        await orchestrator.change_rank(Tier.MAINTAINER, RankAction.PROMOTE, 100, "", caller_ip=IP)
    with pytest.raises(MissingParameter):
        await orchestrator.change_rank(Tier.MAINTAINER, RankAction.SETRANK, 100, 7, caller_ip=IP)
    assert client.calls == []


@pytest.mark.asyncio
async def test_non_numeric_rank(orchestrator, client):
    with pytest.raises(InvalidTransition) as exc:
        await orchestrator.change_rank(Tier.MAINTAINER, RankAction.SETRANK, 100, 7, rank="high", caller_ip=IP)
    assert exc.value.reason == "invalid_rank"
    assert client.calls == []

    # Only setrank reads the rank field.
    result = await orchestrator.change_rank(Tier.MAINTAINER, RankAction.PROMOTE, 100, 7, rank="high", caller_ip=IP)
    assert result.new_rank == 50


@pytest.mark.asyncio
async def test_failed_username_lookup_leaves_rank_untouched(orchestrator, client, sink):
    async def missing(user_id):
        raise NotFound("user_not_found", f"User with ID {user_id} does not exist.")

    client.get_username_from_id = missing
    with pytest.raises(NotFound):
        await orchestrator.change_rank(Tier.MAINTAINER, RankAction.PROMOTE, 100, 7, caller_ip=IP)
    assert client.mutations() == []
    await orchestrator.audit.drain()
    assert sink.messages == []


@pytest.mark.asyncio
async def test_setrank_to_unknown_rank(orchestrator, client):
    with pytest.raises(InvalidTransition) as exc:
        await orchestrator.change_rank(Tier.MAINTAINER, RankAction.SETRANK, 100, 7, rank=42, caller_ip=IP)
    assert exc.value.reason == "unknown_rank"
    assert client.mutations() == []


@pytest.mark.asyncio
async def test_setrank_to_current_rank_skips_mutation(orchestrator, client, sink):
    result = await orchestrator.change_rank(Tier.MAINTAINER, RankAction.SETRANK, 100, 7, rank="10", caller_ip=IP)
    assert result.changed is False
    assert result.new_rank == result.previous_rank == 10
    assert client.mutations() == []
    await orchestrator.audit.drain()
    assert sink.messages == []


@pytest.mark.asyncio
async def test_unknown_username_propagates_not_found(orchestrator):
    with pytest.raises(NotFound):
        await orchestrator.change_rank(Tier.MAINTAINER, RankAction.PROMOTE, "nobody", 7, caller_ip=IP)


@pytest.mark.asyncio
async def test_sixteenth_action_blocks_ip(orchestrator, client, sink):
    for _ in range(15):
        await orchestrator.change_rank(Tier.MAINTAINER, RankAction.SETRANK, 100, 7, rank=10, caller_ip=IP)
    assert not orchestrator.store.is_blocked(IP)

    with pytest.raises(Forbidden) as exc:
        await orchestrator.change_rank(Tier.MAINTAINER, RankAction.SETRANK, 100, 7, rank=10, caller_ip=IP)
    assert exc.value.reason == "rate_limited"
    assert orchestrator.store.is_blocked(IP)

    await orchestrator.audit.drain()
    assert any("blocked" in m for m in sink.messages)


@pytest.mark.asyncio
async def test_machine_tier_is_not_counted(orchestrator):
    for _ in range(20):
        await orchestrator.change_rank(Tier.EXTERNAL_API, RankAction.SETRANK, 100, 7, rank=10, caller_ip=IP)
    assert orchestrator.limiter.counter(IP) is None
    assert not orchestrator.store.is_blocked(IP)


@pytest.mark.asyncio
async def test_user_info(orchestrator):
    info = await orchestrator.user_info("Builderman")
    assert info.userId == 100
    assert info.username == "Builderman"
    assert info.rank == "Member"
    assert info.headshotUrl.startswith("https://tr.rbxcdn.com/100/")


@pytest.mark.asyncio
async def test_list_roles(orchestrator):
    roles = await orchestrator.list_roles()
    assert roles[0] == {"rank": 0, "name": "Guest"}
    assert [r["rank"] for r in roles] == RANKS
