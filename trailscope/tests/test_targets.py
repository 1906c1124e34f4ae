import pytest

from trailscope.errors import InvalidTarget
from trailscope.security import ip_utils
from trailscope.security.targets import (
    ActorTarget,
    CidrLimit,
    Invalid,
    IPRange,
    SingleIP,
    SqlIdentityLookup,
    TargetResolver,
    normalize_name,
)


class DictLookup:
    def __init__(self, actors):
        self.actors = actors
        self.asked = []

    async def actor_id_for_name(self, name):
        self.asked.append(name)
        return self.actors.get(name)


@pytest.fixture
def resolver():
    return TargetResolver(CidrLimit(ipv4=16, ipv6=19), DictLookup({"Alice": 7, "Some user": 8}))


async def test_range_within_limit_resolves_to_bounds(resolver):
    result = await resolver.resolve("10.0.0.0/24")
    assert isinstance(result, IPRange)
    assert ip_utils.from_hex(result.start) == "10.0.0.0"
    assert ip_utils.from_hex(result.end) == "10.0.0.255"


async def test_range_broader_than_limit_is_invalid(resolver):
    result = await resolver.resolve("10.0.0.0/8")
    assert isinstance(result, Invalid)
    assert "/16" in result.reason


async def test_ipv6_limit_is_separate(resolver):
    assert isinstance(await resolver.resolve("2001:db8::/19"), IPRange)
    assert isinstance(await resolver.resolve("2001:db8::/18"), Invalid)


async def test_limit_comes_from_settings(settings):
    limit = CidrLimit.from_settings(settings.model_copy(update={"CIDR_LIMIT_IPV4": 8}))
    resolver = TargetResolver(limit, DictLookup({}))
    assert isinstance(await resolver.resolve("10.0.0.0/8"), IPRange)


async def test_single_ip_and_host_route(resolver):
    single = await resolver.resolve("10.0.0.1")
    assert single == SingleIP("10.0.0.1", "0A000001")
    host = await resolver.resolve("10.0.0.1/32")
    assert isinstance(host, SingleIP) and host.key == "0A000001"


async def test_actor_names_are_normalized_before_lookup(resolver):
    assert await resolver.resolve("Alice") == ActorTarget("Alice", 7)
    assert (await resolver.resolve("some_user")).actor_id == 8


async def test_unknown_actor_is_invalid(resolver):
    result = await resolver.resolve("Nobody")
    assert isinstance(result, Invalid)
    assert result.reason == "no such actor"
    assert isinstance(result.as_error(), InvalidTarget)


@pytest.mark.parametrize("target", ["", "   ", "10.0.0.0/33"])
async def test_blank_and_malformed_targets_are_invalid(resolver, target):
    assert isinstance(await resolver.resolve(target), Invalid)


async def test_address_like_targets_never_reach_identity_lookup(resolver):
    await resolver.resolve("10.0.0.0/8")
    await resolver.resolve("10.0.0.0/33")
    assert resolver.identity_lookup.asked == []


async def test_invalid_target_does_not_abort_batch(resolver):
    results = await resolver.resolve_many(["10.0.0.0/8", "Alice", "10.1.2.3", "Nobody"])
    assert [type(r) for r in results] == [Invalid, ActorTarget, SingleIP, Invalid]


def test_normalize_name():
    assert normalize_name("some_user") == "Some user"
    assert normalize_name("  Alice ") == "Alice"


async def test_sql_identity_lookup(session, seed):
    actor_id = await seed.actor("Alice")
    await session.commit()
    resolver = TargetResolver(CidrLimit(), SqlIdentityLookup(session))
    assert await resolver.resolve("alice") == ActorTarget("alice", actor_id)
    assert isinstance(await resolver.resolve("Bob"), Invalid)
