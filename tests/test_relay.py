"""Tests for the meta-transaction relay."""

import pytest
from eth_account import Account

from bursar.config import RelayConfig
from bursar.envelope import ForwardRequest, encode_call, sign_forward_request
from bursar.errors import (
    ArrayLengthMismatchError,
    BatchTooLargeError,
    CallFailedError,
    ExpiredDeadlineError,
    InsufficientGasError,
    InvalidChainIdError,
    InvalidCommitmentError,
    InvalidConfigurationError,
    InvalidNonceError,
    InvalidSignatureError,
    PausedError,
    RateLimitExceededError,
    TargetCallLimitExceededError,
    TargetNotWhitelistedError,
    UnauthorizedError,
)
from bursar.relay import MetaTxRelay
from bursar.units import native, tokens


RELAYER = Account.create()


@pytest.fixture
def make_relay(chain, actors):
    def _make(config=None, targets=()):
        relay = MetaTxRelay(chain, admin=actors.admin.address, config=config)
        for target in targets:
            relay.set_target_whitelist(actors.admin.address, target.address, True)
        return relay
    return _make


@pytest.fixture
def relay(make_relay, project, token):
    return make_relay(targets=(project, token))


def _signed(relay, account, target, method, **overrides):
    args = overrides.pop("args", {})
    request = relay.build_request(account.address, target.address, encode_call(method, **args), **overrides)
    return request, sign_forward_request(account.key, request, relay.address)


def _create_call(actors):
    return dict(
        args=dict(
            recipient=actors.recipient.address,
            amount=tokens(1_000),
            description="Gasless travel claim",
            document_hash="QmGasless",
        )
    )


def _approve_call(relay, account, token, n=1):
    return _signed(relay, account, token, "approve", args=dict(spender=RELAYER.address, amount=n))


class TestExecute:
    def test_dispatches_with_signer_as_caller(self, relay, project, actors):
        request, signature = _signed(relay, actors.requester, project, "create_request", **_create_call(actors))
        result = relay.execute(RELAYER.address, request, signature)

        assert result.success
        assert result.return_value == 0
        assert result.signer == actors.requester.address.lower()
        assert project.get_request(0).requester == actors.requester.address.lower()
        assert relay.get_nonce(actors.requester.address) == 1
        assert relay.target_call_count(project.address) == 1

    def test_replayed_envelope_is_rejected(self, relay, project, actors):
        request, signature = _signed(relay, actors.requester, project, "create_request", **_create_call(actors))
        relay.execute(RELAYER.address, request, signature)
        with pytest.raises(InvalidNonceError) as excinfo:
            relay.execute(Account.create().address, request, signature)
        assert excinfo.value.expected == 1
        assert project.get_active_requests() == [0]

    def test_signer_must_match_sender(self, relay, project, actors):
        request = relay.build_request(actors.requester.address, project.address, encode_call("cancel_request", request_id=0))
        forged = sign_forward_request(actors.outsider.key, request, relay.address)
        with pytest.raises(InvalidSignatureError):
            relay.execute(RELAYER.address, request, forged)

    def test_foreign_chain_envelope(self, relay, token, actors, clock):
        request = ForwardRequest(
            sender=actors.requester.address,
            to=token.address,
            value=0,
            gas=200_000,
            nonce=0,
            deadline=clock.now() + 60,
            chain_id=1,
            data=encode_call("approve", spender=RELAYER.address, amount=1),
        )
        signature = sign_forward_request(actors.requester.key, request, relay.address)
        with pytest.raises(InvalidChainIdError) as excinfo:
            relay.execute(RELAYER.address, request, signature)
        assert excinfo.value.actual == 1

    def test_expired_deadline(self, relay, token, actors, clock):
        request, signature = _approve_call(relay, actors.requester, token)
        clock.advance(3601)
        with pytest.raises(ExpiredDeadlineError):
            relay.execute(RELAYER.address, request, signature)

    def test_deadline_is_inclusive(self, relay, token, actors, clock):
        request, signature = _approve_call(relay, actors.requester, token)
        clock.advance(3600)
        relay.execute(RELAYER.address, request, signature)

    def test_future_nonce_rejected(self, relay, token, actors):
        request, signature = _signed(
            relay, actors.requester, token, "approve", nonce=5, args=dict(spender=RELAYER.address, amount=1)
        )
        with pytest.raises(InvalidNonceError):
            relay.execute(RELAYER.address, request, signature)

    def test_nonce_is_shared_across_targets(self, relay, project, token, actors):
        request, signature = _signed(relay, actors.requester, project, "create_request", **_create_call(actors))
        relay.execute(RELAYER.address, request, signature)

        stale = relay.build_request(
            actors.requester.address, token.address,
            encode_call("approve", spender=RELAYER.address, amount=1), nonce=0,
        )
        with pytest.raises(InvalidNonceError):
            relay.execute(RELAYER.address, stale, sign_forward_request(actors.requester.key, stale, relay.address))

        request, signature = _approve_call(relay, actors.requester, token)
        assert request.nonce == 1
        relay.execute(RELAYER.address, request, signature)
        assert token.allowance(actors.requester.address, RELAYER.address) == 1

    def test_target_must_be_whitelisted(self, make_relay, project, token, actors):
        relay = make_relay(targets=(project,))
        request, signature = _approve_call(relay, actors.requester, token)
        with pytest.raises(TargetNotWhitelistedError):
            relay.execute(RELAYER.address, request, signature)

    def test_target_must_have_code(self, relay, actors):
        eoa = Account.create()
        relay.set_target_whitelist(actors.admin.address, eoa.address, True)
        request, signature = _signed(relay, actors.requester, eoa, "approve")
        with pytest.raises(CallFailedError, match="no code"):
            relay.execute(RELAYER.address, request, signature)

    def test_gas_floor(self, relay, token, actors):
        request, signature = _signed(
            relay, actors.requester, token, "approve", gas=50_000, args=dict(spender=RELAYER.address, amount=1)
        )
        with pytest.raises(InsufficientGasError):
            relay.execute(RELAYER.address, request, signature)

        request, signature = _signed(
            relay, actors.requester, token, "approve", gas=100_000, args=dict(spender=RELAYER.address, amount=1)
        )
        relay.execute(RELAYER.address, request, signature)

    def test_paused_relay(self, relay, token, actors):
        relay.pause(actors.admin.address)
        request, signature = _approve_call(relay, actors.requester, token)
        with pytest.raises(PausedError):
            relay.execute(RELAYER.address, request, signature)
        relay.unpause(actors.admin.address)
        relay.execute(RELAYER.address, request, signature)

    def test_value_is_forwarded_from_relayer(self, relay, token, actors, chain):
        chain.fund(RELAYER.address, native(1))
        request, signature = _signed(
            relay, actors.requester, token, "approve", value=native("0.25"), args=dict(spender=RELAYER.address, amount=1)
        )
        relay.execute(RELAYER.address, request, signature)
        assert chain.native_balance_of(token.address) == native("0.25")
        assert chain.native_balance_of(RELAYER.address) == native("0.75")


class TestFailedDispatch:
    def test_target_error_rolls_back_relay_state(self, relay, project, actors, chain):
        request_id = project.create_request(
            actors.requester.address, actors.recipient.address, tokens(1_000), "x", "y"
        )
        chain.fund(RELAYER.address, native(1))
        request, signature = _signed(
            relay, actors.secretary, project, "approve_by_secretary",
            value=native("0.1"), args=dict(request_id=request_id, nonce=7),
        )
        with pytest.raises(CallFailedError) as excinfo:
            relay.execute(RELAYER.address, request, signature)

        assert isinstance(excinfo.value.__cause__, InvalidCommitmentError)
        assert relay.get_nonce(actors.secretary.address) == 0
        assert relay.target_call_count(project.address) == 0
        assert chain.native_balance_of(RELAYER.address) == native(1)

    def test_non_relayable_method(self, relay, project, actors):
        request, signature = _signed(
            relay, actors.admin, project, "grant_role",
            args=dict(role="admin", account=actors.outsider.address),
        )
        with pytest.raises(CallFailedError, match="not relayable"):
            relay.execute(RELAYER.address, request, signature)
        assert not project.roles.has_role(actors.outsider.address, "admin")
        assert relay.get_nonce(actors.admin.address) == 0

    def test_unknown_method(self, relay, project, actors):
        request, signature = _signed(relay, actors.requester, project, "steal_everything")
        with pytest.raises(CallFailedError):
            relay.execute(RELAYER.address, request, signature)


class TestRateLimits:
    def test_per_sender_window(self, relay, token, actors, clock):
        for _ in range(10):
            relay.execute(RELAYER.address, *_approve_call(relay, actors.requester, token))
        request, signature = _approve_call(relay, actors.requester, token)
        with pytest.raises(RateLimitExceededError) as excinfo:
            relay.execute(RELAYER.address, request, signature)
        assert excinfo.value.retry_after == 3600

        relay.execute(RELAYER.address, *_approve_call(relay, actors.outsider, token))

        clock.advance(3600)
        request, signature = _approve_call(relay, actors.requester, token)
        relay.execute(RELAYER.address, request, signature)

    def test_admin_tunes_rate_limit(self, relay, token, actors):
        with pytest.raises(UnauthorizedError):
            relay.update_rate_limit(actors.outsider.address, 100)
        relay.update_rate_limit(actors.admin.address, 12)
        for _ in range(12):
            relay.execute(RELAYER.address, *_approve_call(relay, actors.requester, token))
        with pytest.raises(RateLimitExceededError):
            relay.execute(RELAYER.address, *_approve_call(relay, actors.requester, token))

    def test_rate_limit_must_be_positive(self, relay, actors):
        with pytest.raises(InvalidConfigurationError):
            relay.update_rate_limit(actors.admin.address, 0)
        assert relay.max_tx_per_window == 10

    def test_target_call_ceiling_resets_on_whitelist_change(self, make_relay, token, actors):
        relay = make_relay(config=RelayConfig(max_calls_per_target=3), targets=(token,))
        for _ in range(3):
            relay.execute(RELAYER.address, *_approve_call(relay, actors.requester, token))
        with pytest.raises(TargetCallLimitExceededError):
            relay.execute(RELAYER.address, *_approve_call(relay, actors.requester, token))

        relay.set_target_whitelist(actors.admin.address, token.address, False)
        relay.set_target_whitelist(actors.admin.address, token.address, True)
        assert relay.target_call_count(token.address) == 0
        relay.execute(RELAYER.address, *_approve_call(relay, actors.requester, token))

    def test_redundant_whitelist_add_keeps_call_count(self, make_relay, token, actors):
        relay = make_relay(config=RelayConfig(max_calls_per_target=3), targets=(token,))
        for _ in range(3):
            relay.execute(RELAYER.address, *_approve_call(relay, actors.requester, token))

        relay.set_target_whitelist(actors.admin.address, token.address, True)
        assert relay.target_call_count(token.address) == 3
        with pytest.raises(TargetCallLimitExceededError):
            relay.execute(RELAYER.address, *_approve_call(relay, actors.requester, token))

    def test_only_admin_manages_whitelist(self, relay, token, actors):
        with pytest.raises(UnauthorizedError):
            relay.set_target_whitelist(actors.outsider.address, token.address, False)
        assert relay.is_whitelisted(token.address)


class TestBatch:
    def test_per_item_flags(self, relay, token, actors, clock):
        good_a = _approve_call(relay, actors.requester, token)
        bad = _signed(relay, actors.outsider, token, "approve", nonce=9, args=dict(spender=RELAYER.address, amount=1))
        good_b = _approve_call(relay, actors.finance, token)

        flags = relay.batch_execute(
            RELAYER.address,
            [good_a[0], bad[0], good_b[0]],
            [good_a[1], bad[1], good_b[1]],
        )
        assert flags == [True, False, True]
        assert relay.get_nonce(actors.outsider.address) == 0

    def test_same_sender_in_sequence(self, relay, token, actors):
        first = _approve_call(relay, actors.requester, token, n=1)
        second = _signed(relay, actors.requester, token, "approve", nonce=1, args=dict(spender=RELAYER.address, amount=2))
        flags = relay.batch_execute(RELAYER.address, [first[0], second[0]], [first[1], second[1]])
        assert flags == [True, True]
        assert token.allowance(actors.requester.address, RELAYER.address) == 2

    def test_batch_size_cap(self, relay, token, actors):
        items = [_approve_call(relay, actors.requester, token) for _ in range(11)]
        with pytest.raises(BatchTooLargeError):
            relay.batch_execute(RELAYER.address, [i[0] for i in items], [i[1] for i in items])

    def test_batch_length_mismatch(self, relay, token, actors):
        request, signature = _approve_call(relay, actors.requester, token)
        with pytest.raises(ArrayLengthMismatchError):
            relay.batch_execute(RELAYER.address, [request], [signature, signature])
