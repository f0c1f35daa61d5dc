import httpx
import pytest

from src.domain.value_objects.decision import Decision, DecisionOutcome
from src.proxy.inspector import RequestContext, RuleEvaluator


def make_ctx(path="/", user_agent="Mozilla/5.0", client_ip="10.0.0.9", region="", **kw):
    headers = httpx.Headers({"user-agent": user_agent} if user_agent is not None else {})
    return RequestContext(
        method=kw.pop("method", "GET"),
        path=path,
        headers=headers,
        client_ip=client_ip,
        client_region=region,
        **kw,
    )


@pytest.fixture
def evaluator():
    return RuleEvaluator()


def test_no_rules_allows_everything(evaluator, make_policy):
    decision = evaluator.evaluate(make_ctx(), make_policy())
    assert decision.allowed
    assert decision.reason is None


def test_missing_origin_denies(evaluator, make_policy):
    decision = evaluator.evaluate(make_ctx(), make_policy(PROXY_HOSTNAME=""))
    assert not decision.allowed
    assert decision.reason == "no origin configured"


def test_path_pattern(evaluator, make_policy):
    cfg = make_policy(PATHNAME_REGEX="^/api/")
    assert evaluator.evaluate(make_ctx(path="/api/users"), cfg).allowed
    denied = evaluator.evaluate(make_ctx(path="/admin"), cfg)
    assert denied.reason == "path not allowed"


def test_user_agent_is_matched_lowercased(evaluator, make_policy):
    cfg = make_policy(UA_WHITELIST_REGEX="mozilla")
    assert evaluator.evaluate(make_ctx(user_agent="Mozilla/5.0"), cfg).allowed
    denied = evaluator.evaluate(make_ctx(user_agent="curl/8.0"), cfg)
    assert denied.reason == "user agent not whitelisted"


def test_user_agent_blacklist(evaluator, make_policy):
    cfg = make_policy(UA_BLACKLIST_REGEX="bot|spider")
    denied = evaluator.evaluate(make_ctx(user_agent="Googlebot/2.1"), cfg)
    assert denied.reason == "user agent blacklisted"


def test_missing_user_agent_is_empty_string(evaluator, make_policy):
    cfg = make_policy(UA_WHITELIST_REGEX="mozilla")
    denied = evaluator.evaluate(make_ctx(user_agent=None), cfg)
    assert denied.reason == "user agent not whitelisted"


def test_ip_blacklist_literal(evaluator, make_policy):
    cfg = make_policy(IP_BLACKLIST=["10.0.0.5"])
    denied = evaluator.evaluate(make_ctx(client_ip="10.0.0.5"), cfg)
    assert denied.reason == "client ip blacklisted"
    assert evaluator.evaluate(make_ctx(client_ip="10.0.0.9"), cfg).allowed


def test_ip_whitelist_cidr(evaluator, make_policy):
    cfg = make_policy(IP_WHITELIST=["10.0.0.0/24"])
    assert evaluator.evaluate(make_ctx(client_ip="10.0.0.200"), cfg).allowed
    denied = evaluator.evaluate(make_ctx(client_ip="10.0.1.1"), cfg)
    assert denied.reason == "client ip not whitelisted"


def test_ip_whitelist_wins_over_blacklist(evaluator, make_policy):
    cfg = make_policy(IP_WHITELIST=["10.0.0.5"], IP_BLACKLIST=["10.0.0.0/8"])
    assert evaluator.evaluate(make_ctx(client_ip="10.0.0.5"), cfg).allowed
    denied = evaluator.evaluate(make_ctx(client_ip="10.0.0.6"), cfg)
    assert denied.reason == "client ip blacklisted"


def test_ip_lists_take_precedence_over_patterns(evaluator, make_policy):
    cfg = make_policy(IP_BLACKLIST=["192.168.1.1"], IP_BLACKLIST_REGEX=r"^10\.")
    # The pattern would reject this address, the literal list does not
    assert evaluator.evaluate(make_ctx(client_ip="10.0.0.9"), cfg).allowed


def test_ip_patterns_used_without_lists(evaluator, make_policy):
    cfg = make_policy(IP_WHITELIST_REGEX=r"^10\.", IP_BLACKLIST_REGEX=r"^10\.0\.0\.5$")
    assert evaluator.evaluate(make_ctx(client_ip="10.0.0.9"), cfg).allowed
    assert (
        evaluator.evaluate(make_ctx(client_ip="10.0.0.5"), cfg).reason
        == "client ip blacklisted"
    )
    assert (
        evaluator.evaluate(make_ctx(client_ip="172.16.0.1"), cfg).reason
        == "client ip not whitelisted"
    )


def test_ipv6_and_mapped_addresses(evaluator, make_policy):
    cfg = make_policy(IP_BLACKLIST=["2001:db8::/32", "10.0.0.5"])
    assert (
        evaluator.evaluate(make_ctx(client_ip="2001:db8::1"), cfg).reason
        == "client ip blacklisted"
    )
    assert (
        evaluator.evaluate(make_ctx(client_ip="::ffff:10.0.0.5"), cfg).reason
        == "client ip blacklisted"
    )
    assert evaluator.evaluate(make_ctx(client_ip="2001:db9::1"), cfg).allowed


def test_invalid_client_ip_with_lists(evaluator, make_policy):
    cfg = make_policy(IP_WHITELIST=["10.0.0.0/8"])
    denied = evaluator.evaluate(make_ctx(client_ip="testclient"), cfg)
    assert denied.reason == "invalid client ip"


def test_region_ignored_when_absent(evaluator, make_policy):
    cfg = make_policy(REGION_WHITELIST_REGEX="^(US|CA)$")
    assert evaluator.evaluate(make_ctx(region=""), cfg).allowed


def test_region_rules(evaluator, make_policy):
    cfg = make_policy(REGION_WHITELIST_REGEX="^(US|CA|CN)$", REGION_BLACKLIST_REGEX="^CN$")
    assert evaluator.evaluate(make_ctx(region="US"), cfg).allowed
    assert evaluator.evaluate(make_ctx(region="DE"), cfg).reason == "region not whitelisted"
    assert evaluator.evaluate(make_ctx(region="CN"), cfg).reason == "region blacklisted"


def test_first_failing_rule_wins(evaluator, make_policy):
    cfg = make_policy(
        PATHNAME_REGEX="^/api/",
        UA_BLACKLIST_REGEX="curl",
        IP_BLACKLIST=["10.0.0.5"],
    )
    ctx = make_ctx(path="/admin", user_agent="curl/8.0", client_ip="10.0.0.5")
    assert evaluator.evaluate(ctx, cfg).reason == "path not allowed"

    ctx = make_ctx(path="/api/x", user_agent="curl/8.0", client_ip="10.0.0.5")
    assert evaluator.evaluate(ctx, cfg).reason == "user agent blacklisted"


class TestRequestContext:
    def test_target_keeps_raw_path_and_query(self):
        ctx = make_ctx(path="/a b", raw_path="/a%20b", query="x=1&y=2")
        assert ctx.target == "/a%20b?x=1&y=2"

    def test_target_without_query(self):
        assert make_ctx(path="/plain").target == "/plain"

    @pytest.mark.parametrize(
        "headers,expected",
        [
            ({}, False),
            ({"content-length": "0"}, False),
            ({"content-length": "12"}, True),
            ({"transfer-encoding": "chunked"}, True),
        ],
    )
    def test_has_body(self, headers, expected):
        ctx = RequestContext(method="POST", path="/", headers=httpx.Headers(headers))
        assert ctx.has_body is expected


class TestDecision:
    def test_deny_requires_reason(self):
        with pytest.raises(ValueError):
            Decision(outcome=DecisionOutcome.DENY)

    def test_allow_rejects_reason(self):
        with pytest.raises(ValueError):
            Decision(outcome=DecisionOutcome.ALLOW, reason="nope")

    def test_str(self):
        assert str(Decision.allow()) == "allow"
        assert str(Decision.deny("path not allowed")) == "deny: path not allowed"
