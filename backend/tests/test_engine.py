"""
Tests for the journey engine state machine.

Covers:
- Enrollment preconditions and entry step selection
- Linear email/delay/exit flow including the scheduled sweep
- Condition and AI decision routing
- Contact mutation steps (update, tags, activities)
- Failure persistence, retries and the lease lock
- Trigger matching
"""

from datetime import timedelta

import pytest

from journey_engine.errors import ConflictError, ExecutionError, InvalidRequestError, NotFoundError
from journey_engine.models.activity import Activity
from journey_engine.models.contact import Contact
from journey_engine.models.enrollment import JourneyEnrollment
from journey_engine.models.journey import JourneyDefinition
from journey_engine.models.journey_step import JourneyStep
from journey_engine.models.step_execution import JourneyStepExecution
from journey_engine.services.engine import JourneyEngine

from conftest import COMPANY_ID, FakeAIClient, create_contact, create_journey, delay_step, email_step, exit_step


async def executions_for(enrollment_id):
    return await JourneyStepExecution.find(
        JourneyStepExecution.enrollment_id == enrollment_id
    ).sort(+JourneyStepExecution.created_at).to_list()


async def reload(enrollment):
    return await JourneyEnrollment.find_one(JourneyEnrollment.enrollment_id == enrollment.enrollment_id)


async def linear_journey(**fields):
    return await create_journey(
        steps=[email_step("s_email", "s_wait"), delay_step("s_wait", "s_exit", amount=1, unit="days"), exit_step("s_exit")],
        **fields,
    )


# ═══════════════════════════════════════════════════════════════════════
# 1. Enrollment
# ═══════════════════════════════════════════════════════════════════════


class TestEnrollContact:

    @pytest.mark.asyncio
    async def test_requires_active_journey(self, engine):
        await create_contact()
        await linear_journey(status="draft")
        with pytest.raises(NotFoundError):
            await engine.enroll_contact("journey_welcome", "contact_ana")

    @pytest.mark.asyncio
    async def test_requires_existing_contact(self, engine):
        await linear_journey()
        with pytest.raises(NotFoundError):
            await engine.enroll_contact("journey_welcome", "contact_missing")

    @pytest.mark.asyncio
    async def test_contact_of_another_company_is_not_found(self, engine):
        await create_contact(company_id="company_other")
        await linear_journey()
        with pytest.raises(NotFoundError):
            await engine.enroll_contact("journey_welcome", "contact_ana")

    @pytest.mark.asyncio
    async def test_requires_steps(self, engine):
        await create_contact()
        await create_journey(steps=[])
        with pytest.raises(NotFoundError, match="no steps"):
            await engine.enroll_contact("journey_welcome", "contact_ana")

    @pytest.mark.asyncio
    async def test_missing_ids_are_invalid(self, engine):
        with pytest.raises(InvalidRequestError):
            await engine.enroll_contact("", "contact_ana")

    @pytest.mark.asyncio
    async def test_duplicate_active_enrollment_is_refused(self, engine):
        await create_contact()
        await linear_journey()
        await engine.enroll_contact("journey_welcome", "contact_ana")
        with pytest.raises(ConflictError):
            await engine.enroll_contact("journey_welcome", "contact_ana")

    @pytest.mark.asyncio
    async def test_re_enrollment_allowed_when_configured(self, engine):
        await create_contact()
        await linear_journey(allow_re_enrollment=True)
        first = await engine.enroll_contact("journey_welcome", "contact_ana")
        second = await engine.enroll_contact("journey_welcome", "contact_ana")
        assert first.enrollment_id != second.enrollment_id
        journey = await JourneyDefinition.find_one(JourneyDefinition.journey_id == "journey_welcome")
        assert journey.total_enrolled == 2

    @pytest.mark.asyncio
    async def test_entry_step_is_lowest_position(self, engine, email_sender):
        await create_contact()
        await create_journey(steps=[
            {**exit_step("s_exit"), "position": 10},
            {**email_step("s_first", "s_exit"), "position": 1},
        ])
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana", source="manual")
        assert enrollment.status == "completed"
        assert enrollment.enrollment_source == "manual"
        assert len(email_sender.sent) == 1

    @pytest.mark.asyncio
    async def test_context_is_stored_and_used_in_templates(self, engine, email_sender):
        await create_contact()
        await create_journey(steps=[email_step("s_email", subject="Offer {{offer}} for {{first_name}}")])
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana", {"offer": "SPRING20"})
        assert enrollment.context == {"offer": "SPRING20"}
        assert email_sender.sent[0]["subject"] == "Offer SPRING20 for Ana"


# ═══════════════════════════════════════════════════════════════════════
# 2. Linear flow and sweep
# ═══════════════════════════════════════════════════════════════════════


class TestLinearFlow:

    @pytest.mark.asyncio
    async def test_email_then_delay_parks_enrollment(self, engine, clock, email_sender):
        await create_contact()
        await linear_journey()
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")

        assert enrollment.status == "active"
        assert enrollment.emails_sent == 1
        assert enrollment.steps_completed == 1
        assert enrollment.current_step_id == "s_wait"

        executions = await executions_for(enrollment.enrollment_id)
        assert [(e.step_id, e.status) for e in executions] == [("s_email", "executed"), ("s_wait", "scheduled")]
        assert executions[1].scheduled_for == clock.now + timedelta(days=1)
        assert executions[0].email_status == "sent"
        assert executions[0].email_message_id == "<msg-1@journeys.test>"
        assert email_sender.sent[0]["to"] == "ana@example.com"
        assert email_sender.sent[0]["recipient_name"] == "Ana Ruiz"
        assert email_sender.sent[0]["tracking_id"] == executions[0].execution_id

    @pytest.mark.asyncio
    async def test_sweep_resumes_and_completes(self, engine, clock):
        await create_contact()
        await linear_journey()
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")

        clock.advance(days=1, minutes=1)
        summary = await engine.process_scheduled_executions()

        assert summary["processed"] == 1
        assert summary["results"][0]["status"] == "processed"
        enrollment = await reload(enrollment)
        assert enrollment.status == "completed"
        assert enrollment.steps_completed == 2
        assert enrollment.completed_at == clock.now
        journey = await JourneyDefinition.find_one(JourneyDefinition.journey_id == "journey_welcome")
        assert journey.total_enrolled == 1
        assert journey.total_completed == 1

    @pytest.mark.asyncio
    async def test_sweep_ignores_executions_not_yet_due(self, engine, clock):
        await create_contact()
        await linear_journey()
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")

        clock.advance(hours=23)
        summary = await engine.process_scheduled_executions()

        assert summary == {"processed": 0, "results": []}
        enrollment = await reload(enrollment)
        assert enrollment.current_step_id == "s_wait"

    @pytest.mark.asyncio
    async def test_process_step_on_parked_enrollment_has_no_side_effects(self, engine, email_sender):
        await create_contact()
        await linear_journey()
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")

        result = await engine.process_step(enrollment.enrollment_id)

        assert result["status"] == "scheduled"
        assert len(email_sender.sent) == 1
        assert len(await executions_for(enrollment.enrollment_id)) == 2

    @pytest.mark.asyncio
    async def test_process_step_on_inactive_enrollment_is_a_noop(self, engine):
        await create_contact()
        await create_journey(steps=[exit_step("s_exit")])
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")
        assert enrollment.status == "completed"

        result = await engine.process_step(enrollment.enrollment_id)

        assert result == {"message": "Enrollment is not active", "status": "completed"}
        journey = await JourneyDefinition.find_one(JourneyDefinition.journey_id == "journey_welcome")
        assert journey.total_completed == 1
        assert (await reload(enrollment)).steps_completed == 0

    @pytest.mark.asyncio
    async def test_exit_step_completes_without_counting(self, engine):
        await create_contact()
        await create_journey(steps=[exit_step("s_exit", reason="done")])
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")
        step = await JourneyStep.find_one(JourneyStep.step_id == "s_exit")
        assert enrollment.status == "completed"
        assert enrollment.current_step_id is None
        assert enrollment.steps_completed == 0
        assert step.total_executions == 1

    @pytest.mark.asyncio
    async def test_last_step_without_next_completes(self, engine):
        await create_contact()
        await create_journey(steps=[email_step("s_email")])
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")
        assert enrollment.status == "completed"
        assert enrollment.steps_completed == 1

    @pytest.mark.asyncio
    async def test_contact_without_email_is_skipped_but_advances(self, engine, email_sender):
        await create_contact(email=None)
        await create_journey(steps=[email_step("s_email", "s_exit"), exit_step("s_exit")])
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")

        assert email_sender.sent == []
        assert enrollment.status == "completed"
        assert enrollment.emails_sent == 0
        executions = await executions_for(enrollment.enrollment_id)
        assert executions[0].result == {"success": False, "message": "Contact has no email"}

    @pytest.mark.asyncio
    async def test_sweep_skips_executions_of_exited_enrollments(self, engine, clock):
        await create_contact()
        await linear_journey()
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")
        await JourneyEnrollment.find_one(JourneyEnrollment.enrollment_id == enrollment.enrollment_id).update(
            {"$set": {"status": "exited"}}
        )

        clock.advance(days=2)
        summary = await engine.process_scheduled_executions()

        assert summary["results"][0]["status"] == "skipped"
        parked = (await executions_for(enrollment.enrollment_id))[1]
        assert parked.status == "skipped"
        assert (await reload(enrollment)).steps_completed == 1

    @pytest.mark.asyncio
    async def test_sweep_advances_paused_enrollment_without_running(self, engine, clock, email_sender):
        await create_contact()
        await create_journey(steps=[delay_step("s_wait", "s_email"), email_step("s_email")])
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")
        await JourneyEnrollment.find_one(JourneyEnrollment.enrollment_id == enrollment.enrollment_id).update(
            {"$set": {"status": "paused"}}
        )

        clock.advance(days=3)
        summary = await engine.process_scheduled_executions()

        assert summary["results"][0]["status"] == "advanced"
        enrollment = await reload(enrollment)
        assert enrollment.current_step_id == "s_email"
        assert email_sender.sent == []

    @pytest.mark.asyncio
    async def test_sweep_respects_batch_limit(self, engine, clock):
        await create_journey(steps=[delay_step("s_wait")], allow_re_enrollment=True)
        for index in range(3):
            await create_contact(contact_id=f"contact_{index}", email=f"c{index}@example.com")
            await engine.enroll_contact("journey_welcome", f"contact_{index}")

        clock.advance(days=3)
        first = await engine.process_scheduled_executions(limit=2)
        second = await engine.process_scheduled_executions(limit=2)

        assert first["processed"] == 2
        assert second["processed"] == 1
        completed = await JourneyEnrollment.find(JourneyEnrollment.status == "completed").count()
        assert completed == 3


# ═══════════════════════════════════════════════════════════════════════
# 3. Branching
# ═══════════════════════════════════════════════════════════════════════


def lead_condition_journey():
    return create_journey(steps=[
        {
            "step_id": "s_cond",
            "config": {
                "step_type": "condition",
                "conditions": [{"field": "lifecycle_stage", "operator": "equals", "value": "lead"}],
            },
            "condition_true_step_id": "s_yes",
            "condition_false_step_id": "s_no",
        },
        email_step("s_yes", subject="Lead"),
        email_step("s_no", subject="Not a lead"),
    ])


class TestBranching:

    @pytest.mark.asyncio
    async def test_condition_true_branch(self, engine, email_sender):
        await create_contact(lifecycle_stage="lead")
        await lead_condition_journey()
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")

        execution = (await executions_for(enrollment.enrollment_id))[0]
        assert execution.result["passed"] is True
        assert execution.decision_made == "true"
        assert email_sender.sent[0]["subject"] == "Lead"

    @pytest.mark.asyncio
    async def test_condition_false_branch(self, engine, email_sender):
        await create_contact(lifecycle_stage="customer")
        await lead_condition_journey()
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")

        execution = (await executions_for(enrollment.enrollment_id))[0]
        assert execution.result["passed"] is False
        assert execution.decision_made == "false"
        assert email_sender.sent[0]["subject"] == "Not a lead"

    @staticmethod
    async def ai_journey():
        return await create_journey(steps=[
            {
                "step_id": "s_ai",
                "config": {
                    "step_type": "ai_decision",
                    "prompt": "Is {{first_name}} hot or cold?",
                    "options": {"cold": "s_cold", "hot": "s_hot"},
                },
            },
            email_step("s_cold", subject="Cold"),
            email_step("s_hot", subject="Hot"),
        ])

    @pytest.mark.asyncio
    async def test_ai_decision_routes_to_chosen_option(self, engine, ai_client, email_sender):
        await create_contact()
        await self.ai_journey()
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")

        assert email_sender.sent[0]["subject"] == "Hot"
        assert enrollment.context["ai_decision"] == "hot"
        assert ai_client.calls[0][1]["content"] == "Is Ana hot or cold?"
        assert '"cold", "hot"' in ai_client.calls[0][0]["content"]

    @pytest.mark.asyncio
    async def test_ai_failure_falls_back_to_first_option(self, db, clock, email_sender):
        engine = JourneyEngine(email_sender=email_sender, ai_client=FakeAIClient(error=RuntimeError("rate limited")), clock=clock)
        await create_contact()
        await self.ai_journey()

        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")

        execution = (await executions_for(enrollment.enrollment_id))[0]
        assert execution.status == "executed"
        assert execution.decision_made == "cold"
        assert execution.result["error"] == "rate limited"
        assert email_sender.sent[0]["subject"] == "Cold"

    @pytest.mark.asyncio
    async def test_ai_answer_outside_options_falls_back(self, db, clock, email_sender):
        engine = JourneyEngine(email_sender=email_sender, ai_client=FakeAIClient(answer="lukewarm"), clock=clock)
        await create_contact()
        await self.ai_journey()

        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")

        execution = (await executions_for(enrollment.enrollment_id))[0]
        assert execution.result["invalidDecision"] == "lukewarm"
        assert execution.decision_made == "cold"

    @pytest.mark.asyncio
    async def test_ai_decision_without_client_falls_back(self, db, clock, email_sender):
        engine = JourneyEngine(email_sender=email_sender, ai_client=None, clock=clock)
        await create_contact()
        await self.ai_journey()

        await engine.enroll_contact("journey_welcome", "contact_ana")

        assert email_sender.sent[0]["subject"] == "Cold"


# ═══════════════════════════════════════════════════════════════════════
# 4. Contact mutation steps
# ═══════════════════════════════════════════════════════════════════════


class TestContactSteps:

    @pytest.mark.asyncio
    async def test_add_tag_twice_keeps_single_tag(self, engine):
        await create_contact(ai_tags=["existing"])
        await create_journey(steps=[
            {"step_id": "s_tag1", "config": {"step_type": "add_tag", "tags": ["vip"]}, "next_step_id": "s_tag2"},
            {"step_id": "s_tag2", "config": {"step_type": "add_tag", "tags": ["vip"]}},
        ])
        await engine.enroll_contact("journey_welcome", "contact_ana")

        contact = await Contact.find_one(Contact.contact_id == "contact_ana")
        assert contact.ai_tags == ["existing", "vip"]

    @pytest.mark.asyncio
    async def test_remove_tag(self, engine):
        await create_contact(ai_tags=["vip", "trial"])
        await create_journey(steps=[{"step_id": "s_untag", "config": {"step_type": "remove_tag", "tags": ["trial", "absent"]}}])
        await engine.enroll_contact("journey_welcome", "contact_ana")

        contact = await Contact.find_one(Contact.contact_id == "contact_ana")
        assert contact.ai_tags == ["vip"]

    @pytest.mark.asyncio
    async def test_update_contact_never_touches_identity_fields(self, engine):
        await create_contact()
        await create_journey(steps=[{
            "step_id": "s_update",
            "config": {
                "step_type": "update_contact",
                "updates": {"lifecycle_stage": "mql", "lead_score": 80, "company_id": "company_evil"},
            },
        }])
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")

        contact = await Contact.find_one(Contact.contact_id == "contact_ana")
        assert contact.lifecycle_stage == "mql"
        assert contact.as_record()["lead_score"] == 80
        assert contact.company_id == COMPANY_ID
        execution = (await executions_for(enrollment.enrollment_id))[0]
        assert sorted(execution.result["updated_fields"]) == ["lead_score", "lifecycle_stage"]

    @pytest.mark.asyncio
    async def test_create_activity_renders_templates(self, engine, clock):
        await create_contact()
        await create_journey(steps=[{
            "step_id": "s_task",
            "config": {"step_type": "create_activity", "activity_type": "call", "subject": "Call {{first_name}}"},
        }])
        await engine.enroll_contact("journey_welcome", "contact_ana")

        activity = await Activity.find_one(Activity.contact_id == "contact_ana")
        assert activity.subject == "Call Ana"
        assert activity.activity_type == "call"
        assert activity.ai_generated is True
        assert activity.activity_date == clock.now


# ═══════════════════════════════════════════════════════════════════════
# 5. Failures, retries and locking
# ═══════════════════════════════════════════════════════════════════════


class TestFailures:

    @pytest.mark.asyncio
    async def test_handler_failure_is_persisted_and_raised(self, engine, email_sender):
        await create_contact()
        await create_journey(steps=[email_step("s_email")])
        email_sender.error = ConnectionError("smtp down")

        with pytest.raises(ExecutionError) as exc_info:
            await engine.enroll_contact("journey_welcome", "contact_ana")

        assert exc_info.value.step_id == "s_email"
        assert isinstance(exc_info.value.__cause__, ConnectionError)
        enrollment = await JourneyEnrollment.find_one(JourneyEnrollment.contact_id == "contact_ana")
        assert enrollment.status == "active"
        assert enrollment.current_step_id == "s_email"
        execution = (await executions_for(enrollment.enrollment_id))[0]
        assert execution.status == "failed"
        assert execution.error_message == "smtp down"
        assert execution.retry_count == 1
        step = await JourneyStep.find_one(JourneyStep.step_id == "s_email")
        assert (step.total_executions, step.failed_executions) == (1, 1)

    @pytest.mark.asyncio
    async def test_retry_reuses_failed_execution(self, engine, email_sender):
        await create_contact()
        await create_journey(steps=[email_step("s_email")])
        email_sender.error = ConnectionError("smtp down")
        with pytest.raises(ExecutionError):
            await engine.enroll_contact("journey_welcome", "contact_ana")
        enrollment = await JourneyEnrollment.find_one(JourneyEnrollment.contact_id == "contact_ana")

        email_sender.error = None
        await engine.process_step(enrollment.enrollment_id)

        executions = await executions_for(enrollment.enrollment_id)
        assert len(executions) == 1
        assert executions[0].status == "executed"
        assert executions[0].retry_count == 1
        assert executions[0].error_message is None
        assert (await reload(enrollment)).status == "completed"

    @pytest.mark.asyncio
    async def test_held_lease_refuses_concurrent_processing(self, engine, clock):
        await create_contact()
        await linear_journey()
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")
        await JourneyEnrollment.find_one(JourneyEnrollment.enrollment_id == enrollment.enrollment_id).update(
            {"$set": {"locked_until": clock.now + timedelta(minutes=5), "lock_token": "other"}}
        )

        with pytest.raises(ConflictError):
            await engine.process_step(enrollment.enrollment_id)

        clock.advance(minutes=6)
        result = await engine.process_step(enrollment.enrollment_id)
        assert result["status"] == "scheduled"

    @pytest.mark.asyncio
    async def test_lease_released_after_processing(self, engine):
        await create_contact()
        await linear_journey()
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")
        assert enrollment.locked_until is None
        assert enrollment.lock_token is None

    @pytest.mark.asyncio
    async def test_unknown_enrollment(self, engine):
        with pytest.raises(NotFoundError):
            await engine.process_step("enrollment_missing")

    @pytest.mark.asyncio
    async def test_step_budget_stops_long_runs(self, db, clock, email_sender):
        engine = JourneyEngine(email_sender=email_sender, clock=clock, max_steps_per_run=2)
        await create_contact()
        await create_journey(steps=[
            email_step("s1", "s2"),
            email_step("s2", "s3"),
            email_step("s3"),
        ])
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")

        assert enrollment.status == "active"
        assert enrollment.current_step_id == "s3"
        assert len(email_sender.sent) == 2

        # A fresh pending step may still belong to a live run.
        assert (await engine.process_scheduled_executions())["processed"] == 0

        clock.advance(seconds=engine.lock_ttl.total_seconds())
        summary = await engine.process_scheduled_executions()

        assert summary["results"] == [{
            "execution_id": summary["results"][0]["execution_id"],
            "enrollment_id": enrollment.enrollment_id,
            "status": "continued",
        }]
        assert (await reload(enrollment)).status == "completed"
        assert len(email_sender.sent) == 3

    @pytest.mark.asyncio
    async def test_sweep_leaves_pending_step_of_paused_enrollment(self, db, clock, email_sender):
        engine = JourneyEngine(email_sender=email_sender, clock=clock, max_steps_per_run=1)
        await create_contact()
        await create_journey(steps=[email_step("s1", "s2"), email_step("s2")])
        enrollment = await engine.enroll_contact("journey_welcome", "contact_ana")
        await JourneyEnrollment.find_one(JourneyEnrollment.enrollment_id == enrollment.enrollment_id).update(
            {"$set": {"status": "paused"}}
        )

        clock.advance(days=1)
        summary = await engine.process_scheduled_executions()

        assert summary["processed"] == 0
        assert (await reload(enrollment)).current_step_id == "s2"
        assert len(email_sender.sent) == 1


# ═══════════════════════════════════════════════════════════════════════
# 6. Triggers
# ═══════════════════════════════════════════════════════════════════════


class TestCheckTriggers:

    @pytest.mark.asyncio
    async def test_enrolls_into_matching_journeys(self, engine):
        await create_contact()
        await create_journey(
            journey_id="journey_customer",
            trigger_type="lifecycle_change",
            trigger_conditions={"to_stage": "customer"},
            steps=[email_step("s_a")],
        )
        await create_journey(
            journey_id="journey_churn",
            trigger_type="lifecycle_change",
            trigger_conditions={"to_stage": "churned"},
            steps=[email_step("s_b")],
        )
        payload = {"company_id": COMPANY_ID, "contact_id": "contact_ana", "from_stage": "lead", "to_stage": "customer"}

        result = await engine.check_triggers("lifecycle_change", payload)

        assert result["triggered"] == "lifecycle_change"
        assert [e["journey_id"] for e in result["enrolled"]] == ["journey_customer"]
        enrollment = await JourneyEnrollment.find_one(JourneyEnrollment.journey_id == "journey_customer")
        assert enrollment.enrollment_source == "trigger"
        assert enrollment.context["to_stage"] == "customer"

    @pytest.mark.asyncio
    async def test_individual_failures_are_skipped(self, engine):
        await create_contact()
        await create_journey(journey_id="journey_a", trigger_type="tag_added", steps=[email_step("s_a")])
        await create_journey(journey_id="journey_b", trigger_type="tag_added", steps=[])
        payload = {"company_id": COMPANY_ID, "contact_id": "contact_ana", "tags": ["vip"]}

        result = await engine.check_triggers("tag_added", payload)

        assert [e["journey_id"] for e in result["enrolled"]] == ["journey_a"]

    @pytest.mark.asyncio
    async def test_failed_first_step_still_reports_enrollment(self, engine, email_sender):
        await create_contact()
        await create_journey(journey_id="journey_a", trigger_type="tag_added", steps=[email_step("s_a")])
        email_sender.error = ConnectionError("smtp down")
        payload = {"company_id": COMPANY_ID, "contact_id": "contact_ana", "tags": ["vip"]}

        result = await engine.check_triggers("tag_added", payload)

        enrollment = await JourneyEnrollment.find_one(JourneyEnrollment.journey_id == "journey_a")
        assert enrollment.status == "active"
        assert len(result["enrolled"]) == 1
        assert result["enrolled"][0]["enrollment_id"] == enrollment.enrollment_id
        assert "smtp down" in result["enrolled"][0]["error"]

    @pytest.mark.asyncio
    async def test_requires_company_and_contact(self, engine):
        with pytest.raises(InvalidRequestError):
            await engine.check_triggers("tag_added", {"contact_id": "contact_ana"})
        with pytest.raises(InvalidRequestError):
            await engine.check_triggers("", {})
