"""PayrollRuntime wiring tests."""

from decimal import Decimal

import pytest

from payroll_config import get_active_config
from payroll_execution.runtime import PayrollRuntime
from payroll_kernel.domain.dtos import RunStatus
from payroll_kernel.domain.fees import FeeTier
from payroll_kernel.exceptions import MasterKeyError
from tests.conftest import TEST_ACTOR, TEST_MASTER_KEY_HEX, new_address


@pytest.fixture
def environ(tmp_path):
    return {
        "PAYROLL_MASTER_KEY": TEST_MASTER_KEY_HEX,
        "PAYROLL_DATABASE_URL": f"sqlite:///{tmp_path / 'runtime.db'}",
    }


@pytest.fixture
def runtime(environ, clock):
    rt = PayrollRuntime.from_environment(environ=environ, clock=clock)
    rt.create_tables()
    yield rt
    rt.dispose()


class TestFromEnvironment:
    def test_wires_config(self, runtime, environ, clock):
        assert runtime.config.database.url == environ["PAYROLL_DATABASE_URL"]
        assert runtime.engine.dialect.name == "sqlite"
        assert runtime.clock is clock

    def test_missing_master_key(self, environ):
        del environ["PAYROLL_MASTER_KEY"]
        with pytest.raises(MasterKeyError):
            PayrollRuntime.from_environment(environ=environ)

    def test_fee_tier_override(self, environ, tmp_path):
        environ["PAYROLL_FEE_TIER"] = "enterprise"
        rt = PayrollRuntime.from_environment(environ=environ)
        try:
            rt.create_tables()
            with rt.session_scope() as session:
                org = rt.ledger(session).create_organization("Tier Co", new_address())
            assert org.fee_tier == FeeTier.ENTERPRISE
        finally:
            rt.dispose()

    def test_from_config_with_engine(self, engine, master_key, clock):
        rt = PayrollRuntime.from_config(
            get_active_config(environ={}), master_key, clock=clock, engine=engine,
        )
        assert rt.engine is engine


class TestRuntimeServices:
    def test_end_to_end(self, runtime, admin_signer, make_rail):
        with runtime.session_scope() as session:
            ledger = runtime.ledger(session)
            org = ledger.create_organization("Runtime Co", admin_signer.address)
            for salary in ("1500", "2500"):
                ledger.add_employee(
                    org.organization_id, "Staff", salary, TEST_ACTOR,
                    stealth_address=new_address(),
                )
            run_id = ledger.create_run(org.organization_id, "USDT", TEST_ACTOR).run.run_id

        result = runtime.orchestrator().execute(run_id, admin_signer, make_rail(), actor=TEST_ACTOR)

        assert result.status == RunStatus.COMPLETED
        assert result.fee.fee == Decimal("20.00")
        with runtime.session_scope() as session:
            assert runtime.ledger(session).get_run(run_id).status == RunStatus.COMPLETED

    def test_orchestrator_uses_config(self, runtime):
        orchestrator = runtime.orchestrator()
        execution = runtime.config.execution
        assert orchestrator._stale_after_seconds == execution.stale_after_seconds
        assert orchestrator._finalize_attempts == execution.finalize_attempts

    def test_invite_ttl_from_config(self, runtime, clock):
        with runtime.session_scope() as session:
            ledger = runtime.ledger(session)
            org = ledger.create_organization("Invite Co", new_address())
            record = ledger.add_employee(org.organization_id, "Invitee", 100, TEST_ACTOR)
        assert record.invite_expires_at == clock.now_utc() + runtime.config.invites.ttl
