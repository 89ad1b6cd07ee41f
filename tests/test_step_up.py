"""
Unit tests for the step-up authentication state machine.
"""

import asyncio
from datetime import timedelta

import pytest

from loyalty_guard.core.errors import (
    ExpiredChallengeError,
    FreshVerificationRequiredError,
    InvalidCodeError,
    InvalidTransitionError,
    MFAChallengeError,
    MFAEnrollmentError,
    OperationCancelledError,
    VerificationTimeoutError,
)
from loyalty_guard.core.identity import AssuranceLevel
from loyalty_guard.core.step_up import StepUpAuthenticator, StepUpState, code_expiring_soon

from fakes import sign_in


@pytest.fixture
def flow(sessions, fast_config):
    return StepUpAuthenticator(sessions, fast_config.step_up)


class TestEnrollment:
    """Test first-time enrollment."""

    @pytest.mark.asyncio
    async def test_enroll_and_verify(self, sessions, provider, flow):
        await sign_in(sessions)

        state = await flow.start_enrollment()

        assert state is StepUpState.ENROLLMENT_PENDING
        enrolled = flow.enrolled
        assert enrolled.friendly_name.startswith("LoyaltyBean-")
        assert enrolled.secret
        assert enrolled.uri.startswith("otpauth://totp/LoyaltyBean")
        assert f"secret={enrolled.secret}" in enrolled.uri
        assert enrolled.qr_code == provider.qr_code

        flow.begin_verification()
        session = await flow.submit_code(provider.current_code(enrolled.id))

        assert flow.state is StepUpState.VERIFIED
        assert session.assurance_level is AssuranceLevel.AAL2
        assert sessions.session.assurance_level is AssuranceLevel.AAL2
        assert provider.factors_of()[enrolled.id].verified

    @pytest.mark.asyncio
    async def test_enrollment_rejected(self, sessions, provider, flow):
        await sign_in(sessions)
        provider.errors["enroll"] = MFAEnrollmentError("Maximum number of enrolled factors reached")

        with pytest.raises(MFAEnrollmentError):
            await flow.start_enrollment()
        assert flow.state is StepUpState.IDLE

    @pytest.mark.asyncio
    async def test_replacement_gets_a_new_name(self, sessions, fast_config):
        await sign_in(sessions)
        first = StepUpAuthenticator(sessions, fast_config.step_up)
        await first.start_enrollment()
        # The unverified leftover now conflicts, so replace it instead of re-enrolling
        second = StepUpAuthenticator(sessions, fast_config.step_up)
        assert await second.start_enrollment() is StepUpState.EXISTING_FACTOR_CONFLICT
        replaced = await second.replace_existing()
        assert replaced.friendly_name != first.enrolled.friendly_name
        assert replaced.friendly_name.startswith("LoyaltyBean-")

    def test_begin_verification_requires_enrollment(self, flow):
        with pytest.raises(InvalidTransitionError):
            flow.begin_verification()


class TestExistingFactorConflict:
    """Test conflict resolution when an authenticator already exists."""

    @pytest.mark.asyncio
    async def test_existing_factor_blocks_enrollment(self, sessions, provider, flow):
        factor_id = provider.add_verified_factor()
        await sign_in(sessions)

        state = await flow.start_enrollment()

        assert state is StepUpState.EXISTING_FACTOR_CONFLICT
        assert [f.id for f in flow.existing_factors] == [factor_id]
        assert provider.calls["enroll"] == 0

    @pytest.mark.asyncio
    async def test_keep_existing(self, sessions, provider, flow):
        factor_id = provider.add_verified_factor()
        await sign_in(sessions)
        await flow.start_enrollment()

        assert flow.keep_existing() is StepUpState.AWAITING_CODE
        assert flow.factor_id == factor_id
        await flow.submit_code(provider.current_code(factor_id))
        assert flow.state is StepUpState.VERIFIED

    @pytest.mark.asyncio
    async def test_replace_verified_factor_needs_fresh_verification(self, sessions, provider, flow):
        factor_id = provider.add_verified_factor()
        await sign_in(sessions)
        await flow.start_enrollment()

        with pytest.raises(FreshVerificationRequiredError):
            await flow.replace_existing()
        assert factor_id in provider.factors_of()

        flow.keep_existing()
        await flow.submit_code(provider.current_code(factor_id))
        enrolled = await flow.replace_existing()

        assert flow.state is StepUpState.ENROLLMENT_PENDING
        assert list(provider.factors_of()) == [enrolled.id]
        assert not flow.fresh_verification

    @pytest.mark.asyncio
    async def test_unverified_leftover_is_discarded(self, sessions, provider, flow):
        leftover = provider.add_unverified_factor()
        await sign_in(sessions)
        await flow.start_enrollment()

        with pytest.raises(MFAChallengeError):
            flow.keep_existing()
        enrolled = await flow.replace_existing()

        assert leftover not in provider.factors_of()
        assert enrolled.id in provider.factors_of()

    @pytest.mark.asyncio
    async def test_foreign_factor_names_do_not_conflict(self, sessions, provider, flow):
        provider.add_verified_factor(friendly_name="OtherApp")
        provider.add_verified_factor(friendly_name="LoyaltyBeanery")
        await sign_in(sessions)

        assert await flow.start_enrollment() is StepUpState.ENROLLMENT_PENDING


class TestVerification:
    """Test code submission, challenges and timeouts."""

    @pytest.mark.asyncio
    async def test_malformed_code(self, sessions, provider, flow):
        provider.add_verified_factor()
        await sign_in(sessions)
        await flow.start_step_up()

        malformed = ["12ab56", "123456\n", "١٢٣٤٥٦", "12345", "1234567"]
        for code in malformed:
            with pytest.raises(InvalidCodeError):
                await flow.submit_code(code)

        assert flow.state is StepUpState.AWAITING_CODE
        assert flow.attempt_count == len(malformed)
        assert provider.calls["challenge"] == 0

    @pytest.mark.asyncio
    async def test_wrong_code(self, sessions, provider, flow):
        factor_id = provider.add_verified_factor()
        await sign_in(sessions)
        await flow.start_step_up()
        wrong = "000000" if provider.current_code(factor_id) != "000000" else "111111"

        with pytest.raises(InvalidCodeError):
            await flow.submit_code(wrong)

        assert flow.state is StepUpState.AWAITING_CODE
        assert flow.entered_code == ""
        assert sessions.step_up_pending

        await flow.submit_code(provider.current_code(factor_id))
        assert not sessions.step_up_pending
        assert flow.attempt_count == 1

    @pytest.mark.asyncio
    async def test_rapid_submissions_collapse(self, sessions, provider, flow):
        factor_id = provider.add_verified_factor()
        await sign_in(sessions)
        await flow.start_step_up()

        results = await asyncio.gather(
            flow.submit_code("000001"),
            flow.submit_code("000002"),
            flow.submit_code(provider.current_code(factor_id)),
        )

        assert provider.calls["verify"] == 1
        assert results[0] == results[1] == results[2]
        assert flow.state is StepUpState.VERIFIED

    @pytest.mark.asyncio
    async def test_verification_timeout(self, sessions, provider, flow):
        factor_id = provider.add_verified_factor()
        await sign_in(sessions)
        await flow.start_step_up()
        provider.delays["verify"] = 1.0

        with pytest.raises(VerificationTimeoutError) as exc_info:
            await flow.submit_code(provider.current_code(factor_id))

        assert isinstance(exc_info.value, TimeoutError)
        assert flow.state is StepUpState.AWAITING_CODE
        assert flow.entered_code == ""
        assert flow.attempt_count == 1

    @pytest.mark.asyncio
    async def test_challenge_is_single_use(self, sessions, provider, flow):
        factor_id = provider.add_verified_factor()
        await sign_in(sessions)

        challenge = await flow.challenge(factor_id)
        await flow.verify(factor_id, challenge.id, provider.current_code(factor_id))

        with pytest.raises(ExpiredChallengeError):
            await flow.verify(factor_id, challenge.id, provider.current_code(factor_id))
        assert provider.calls["verify"] == 1

    @pytest.mark.asyncio
    async def test_expired_challenge(self, sessions, provider, flow):
        factor_id = provider.add_verified_factor()
        await sign_in(sessions)
        provider.mfa.challenge_ttl = timedelta(seconds=-1)

        challenge = await flow.challenge(factor_id)
        with pytest.raises(ExpiredChallengeError):
            await flow.verify(factor_id, challenge.id, provider.current_code(factor_id))
        assert provider.calls["verify"] == 0

    @pytest.mark.asyncio
    async def test_challenge_unknown_factor(self, sessions, flow):
        await sign_in(sessions)
        with pytest.raises(MFAChallengeError):
            await flow.challenge("missing")

    @pytest.mark.asyncio
    async def test_step_up_without_factor(self, sessions, flow):
        await sign_in(sessions)
        with pytest.raises(MFAChallengeError):
            await flow.start_step_up()
        assert flow.state is StepUpState.IDLE

    def test_code_expiring_soon(self):
        window_start = 30 * 1000
        assert code_expiring_soon(window_start + 26)
        assert code_expiring_soon(window_start + 25)
        assert not code_expiring_soon(window_start + 10)

    def test_code_expiring_soon_uses_config(self, flow):
        assert flow.code_expiring_soon(30 * 1000 + 29)
        assert not flow.code_expiring_soon(30 * 1000)


class TestUnenroll:
    """Test factor removal behind fresh verification."""

    @pytest.mark.asyncio
    async def test_unenroll_requires_verification(self, sessions, provider, flow):
        factor_id = provider.add_verified_factor()
        await sign_in(sessions)

        with pytest.raises(FreshVerificationRequiredError):
            await flow.unenroll(factor_id)
        assert factor_id in provider.factors_of()

    @pytest.mark.asyncio
    async def test_one_verification_one_unenroll(self, sessions, provider, flow):
        factor_id = provider.add_verified_factor()
        other_id = provider.add_verified_factor(friendly_name="LoyaltyBean-two")
        await sign_in(sessions)
        await flow.start_step_up(factor_id)
        await flow.submit_code(provider.current_code(factor_id))

        await flow.unenroll(factor_id)

        assert factor_id not in provider.factors_of()
        with pytest.raises(FreshVerificationRequiredError):
            await flow.unenroll(other_id)


class TestCancellation:
    """Test cancel, reset and session teardown."""

    @pytest.mark.asyncio
    async def test_cancel_pending_submission(self, sessions, provider, flow):
        factor_id = provider.add_verified_factor()
        await sign_in(sessions)
        await flow.start_step_up()

        task = asyncio.ensure_future(flow.submit_code(provider.current_code(factor_id)))
        await asyncio.sleep(0)
        flow.cancel()

        with pytest.raises(OperationCancelledError):
            await task
        assert flow.state is StepUpState.CANCELLED
        assert provider.calls["verify"] == 0
        with pytest.raises(InvalidTransitionError):
            await flow.submit_code("123456")

    @pytest.mark.asyncio
    async def test_sign_out_aborts_verification(self, sessions, provider, flow):
        factor_id = provider.add_verified_factor()
        await sign_in(sessions)
        await flow.start_step_up()
        provider.delays["verify"] = 0.1

        task = asyncio.ensure_future(flow.submit_code(provider.current_code(factor_id)))
        await asyncio.sleep(0.05)
        await sessions.sign_out()

        with pytest.raises(OperationCancelledError):
            await task
        assert flow.state is StepUpState.CANCELLED
        assert sessions.session is None

    @pytest.mark.asyncio
    async def test_reset_starts_fresh_flow(self, sessions, provider, flow):
        provider.add_verified_factor()
        await sign_in(sessions)
        await flow.start_step_up()
        with pytest.raises(InvalidCodeError):
            await flow.submit_code("bad")

        flow.reset()

        assert flow.state is StepUpState.IDLE
        assert flow.attempt_count == 0
        assert await flow.start_step_up() is StepUpState.AWAITING_CODE
