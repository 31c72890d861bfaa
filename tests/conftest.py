"""Shared fixtures: a manual-clock chain, a funded project and its principals."""

from types import SimpleNamespace

import pytest
from eth_account import Account

from bursar.access import Role
from bursar.chain import Chain
from bursar.clock import ManualClock
from bursar.commit_reveal import REVEAL_WINDOW, compute_commitment, new_nonce
from bursar.reimbursement import ReimbursementProject
from bursar.token import InMemoryBalanceLedger
from bursar.units import tokens


CHAIN_ID = 31337


@pytest.fixture
def clock():
    return ManualClock(start=1_700_000_000)


@pytest.fixture
def chain(clock):
    return Chain(chain_id=CHAIN_ID, clock=clock)


@pytest.fixture
def token(chain):
    return InMemoryBalanceLedger(chain)


@pytest.fixture
def actors():
    return SimpleNamespace(
        admin=Account.create(),
        requester=Account.create(),
        secretary=Account.create(),
        committee=[Account.create() for _ in range(4)],
        finance=Account.create(),
        director=Account.create(),
        recipient=Account.create(),
        outsider=Account.create(),
    )


@pytest.fixture
def make_project(chain, token, actors):
    def _make(balance=tokens(1_000_000), config=None, events=None):
        project = ReimbursementProject(
            chain,
            token,
            admin=actors.admin.address,
            project_id="P-001",
            config=config,
            events=events,
        )
        admin = actors.admin.address
        project.grant_role(admin, Role.REQUESTER, actors.requester.address)
        project.grant_role(admin, Role.SECRETARY, actors.secretary.address)
        for member in actors.committee:
            project.grant_role(admin, Role.COMMITTEE, member.address)
        project.grant_role(admin, Role.FINANCE, actors.finance.address)
        project.grant_role(admin, Role.DIRECTOR, actors.director.address)
        if balance:
            token.mint(project.address, balance)
        return project
    return _make


@pytest.fixture
def project(make_project):
    return make_project()


@pytest.fixture
def approve(clock):
    """Commit, wait out the reveal window, then reveal via ``method``."""
    def _approve(project, account, request_id, method):
        nonce = new_nonce()
        commitment = compute_commitment(account.address, request_id, project.chain_id, nonce)
        project.commit_approval(account.address, request_id, commitment)
        clock.advance(REVEAL_WINDOW + 1)
        return getattr(project, method)(account.address, request_id, nonce)
    return _approve


@pytest.fixture
def run_ladder(approve, actors):
    """Drive a request up the ladder, stopping after ``until``."""
    steps = ["secretary", "committee", "finance", "additional", "director"]

    def _run(project, request_id, until="director"):
        status = None
        for step in steps[: steps.index(until) + 1]:
            if step == "secretary":
                status = approve(project, actors.secretary, request_id, "approve_by_secretary")
            elif step == "committee":
                status = approve(project, actors.committee[0], request_id, "approve_by_committee")
            elif step == "finance":
                status = approve(project, actors.finance, request_id, "approve_by_finance")
            elif step == "additional":
                for member in actors.committee[1:]:
                    status = approve(project, member, request_id, "approve_by_committee_additional")
            else:
                status = approve(project, actors.director, request_id, "approve_by_director")
        return status
    return _run
