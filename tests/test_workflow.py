import unittest

from clearpro.errors import InvalidStateError, ValidationError
from clearpro.models import CaseStatus
from clearpro.workflow import (
    TERMINAL_STATUSES, CaseAction, action_for, allowed_actions, apply_transition, open_case,
)


class OpenCaseTests(unittest.TestCase):
    def test_new_case_starts_pending_treatment(self):
        case = open_case("A", "Dr. X")
        self.assertEqual(case.status, CaseStatus.PENDING_TREATMENT)
        self.assertTrue(case.case_id.startswith("CP-"))
        self.assertIsNone(case.treatment_plan)
        self.assertEqual(case.status_history[0]["from"], None)
        self.assertEqual(case.status_history[0]["to"], "pending_treatment")

    def test_missing_identity_fields_rejected(self):
        with self.assertRaises(ValidationError):
            open_case(None, "Dr. X")
        with self.assertRaises(ValidationError):
            open_case({"name": "A"}, "   ")

    def test_case_ids_are_distinct(self):
        ids = {open_case("A", "Dr. X").case_id for _ in range(50)}
        self.assertEqual(len(ids), 50)


class TransitionTableTests(unittest.TestCase):
    def test_terminal_statuses(self):
        self.assertEqual(TERMINAL_STATUSES, {CaseStatus.APPROVED, CaseStatus.REJECTED})
        self.assertEqual(allowed_actions(CaseStatus.APPROVED), [])

    def test_revision_only_leaves_through_upload(self):
        self.assertEqual(allowed_actions(CaseStatus.REVISION_REQUESTED), [CaseAction.UPLOAD_TREATMENT_PLAN])

    def test_every_action_outside_the_table_is_refused(self):
        for status in CaseStatus:
            for action in CaseAction:
                if action is CaseAction.CREATE or action in allowed_actions(status):
                    continue
                case = open_case("A", "Dr. X")
                case.status = status
                with self.subTest(status=status.value, action=action.value):
                    with self.assertRaises(InvalidStateError):
                        apply_transition(case, action, files=["a.stl"], notes="n")
                    self.assertEqual(case.status, status)

    def test_action_for_target(self):
        self.assertEqual(action_for(CaseStatus.PENDING_APPROVAL, CaseStatus.REJECTED), CaseAction.REJECT)
        with self.assertRaises(InvalidStateError):
            action_for(CaseStatus.PENDING_TREATMENT, CaseStatus.APPROVED)


class ApplyTransitionTests(unittest.TestCase):
    def setUp(self):
        self.case = open_case("A", "Dr. X")

    def test_reject_scenario(self):
        apply_transition(self.case, CaseAction.UPLOAD_TREATMENT_PLAN, files=["a.stl"])
        self.assertEqual(self.case.status, CaseStatus.PENDING_APPROVAL)
        self.assertEqual(self.case.treatment_plan["uploadedBy"], "admin")

        apply_transition(self.case, CaseAction.REJECT, "Dr. X", reason="wrong arch")
        self.assertEqual(self.case.status, CaseStatus.REJECTED)
        self.assertEqual(self.case.treatment_plan["rejectionReason"], "wrong arch")
        self.assertNotIn("approved", self.case.treatment_plan)

        with self.assertRaises(InvalidStateError):
            apply_transition(self.case, CaseAction.APPROVE)
        self.assertEqual(self.case.status, CaseStatus.REJECTED)

    def test_doctor_actions_need_pending_approval(self):
        for action in (CaseAction.APPROVE, CaseAction.REJECT, CaseAction.REQUEST_REVISION):
            with self.assertRaises(InvalidStateError):
                apply_transition(self.case, action, notes="n")

    def test_upload_refused_outside_pending_treatment_or_revision(self):
        apply_transition(self.case, CaseAction.UPLOAD_TREATMENT_PLAN, files=["a.stl"])
        with self.assertRaises(InvalidStateError):
            apply_transition(self.case, CaseAction.UPLOAD_TREATMENT_PLAN, files=["b.stl"])
        apply_transition(self.case, CaseAction.APPROVE, "Dr. X")
        with self.assertRaises(InvalidStateError):
            apply_transition(self.case, CaseAction.UPLOAD_TREATMENT_PLAN, files=["b.stl"])

    def test_upload_refused_after_rejection(self):
        apply_transition(self.case, CaseAction.UPLOAD_TREATMENT_PLAN, files=["a.stl"])
        apply_transition(self.case, CaseAction.REJECT, "Dr. X", reason="wrong arch")
        with self.assertRaises(InvalidStateError):
            apply_transition(self.case, CaseAction.UPLOAD_TREATMENT_PLAN, files=["b.stl"])
        self.assertEqual(self.case.status, CaseStatus.REJECTED)

    def test_doctor_actions_refused_while_revision_requested(self):
        apply_transition(self.case, CaseAction.UPLOAD_TREATMENT_PLAN, files=["a.stl"])
        apply_transition(self.case, CaseAction.REQUEST_REVISION, "Dr. X", notes="rotate 21")
        for action in (CaseAction.APPROVE, CaseAction.REJECT, CaseAction.REQUEST_REVISION):
            with self.assertRaises(InvalidStateError):
                apply_transition(self.case, action, notes="again")
        self.assertEqual(self.case.status, CaseStatus.REVISION_REQUESTED)

    def test_repeating_approve_fails(self):
        apply_transition(self.case, CaseAction.UPLOAD_TREATMENT_PLAN, files=["a.stl"])
        apply_transition(self.case, CaseAction.APPROVE)
        with self.assertRaises(InvalidStateError):
            apply_transition(self.case, CaseAction.APPROVE)
        self.assertTrue(self.case.treatment_plan["approved"])
        self.assertEqual(self.case.treatment_plan["approvedBy"], "doctor")

    def test_revision_loop_bumps_plan_version(self):
        apply_transition(self.case, CaseAction.UPLOAD_TREATMENT_PLAN, files=["a.stl"])
        apply_transition(self.case, CaseAction.REQUEST_REVISION, "Dr. X", notes="move tooth 11")
        self.assertEqual(self.case.status, CaseStatus.REVISION_REQUESTED)
        self.assertEqual(self.case.treatment_plan["revisionNotes"], "move tooth 11")

        apply_transition(self.case, CaseAction.UPLOAD_TREATMENT_PLAN, "Admin Y", files=["b.stl"])
        self.assertEqual(self.case.status, CaseStatus.PENDING_APPROVAL)
        self.assertEqual(self.case.treatment_plan["version"], 2)
        self.assertEqual(self.case.treatment_plan["files"], ["b.stl"])
        self.assertNotIn("revisionNotes", self.case.treatment_plan)
        self.assertEqual(
            [h["action"] for h in self.case.status_history],
            ["create", "upload_treatment_plan", "request_revision", "upload_treatment_plan"],
        )

    def test_revision_needs_notes(self):
        apply_transition(self.case, CaseAction.UPLOAD_TREATMENT_PLAN, files=["a.stl"])
        with self.assertRaises(ValidationError):
            apply_transition(self.case, CaseAction.REQUEST_REVISION, notes="  ")
        self.assertEqual(self.case.status, CaseStatus.PENDING_APPROVAL)

    def test_upload_needs_files(self):
        with self.assertRaises(ValidationError):
            apply_transition(self.case, CaseAction.UPLOAD_TREATMENT_PLAN, files=[])
        self.assertEqual(self.case.status, CaseStatus.PENDING_TREATMENT)

    def test_updated_at_moves_forward(self):
        before = self.case.updated_at
        apply_transition(self.case, CaseAction.UPLOAD_TREATMENT_PLAN, files=["a.stl"])
        self.assertGreaterEqual(self.case.updated_at, before)
