"""Tests for the rule-based lifecycle classifier and relevance gate."""

from __future__ import annotations

import pytest

from job_ingest.email.classifier import (
    APPLIED,
    INTERVIEW,
    JOB_ALERT,
    OFFER,
    REJECTION,
    DetailLevel,
    HeaderClassification,
    HeaderDecision,
    classify,
    classify_at,
    classify_header,
    is_relevant,
)


class TestClassify:
    def test_application_receipt(self):
        result = classify(
            "Thank you for applying to Acme",
            "We received your application for the Software Engineer position.",
        )
        assert result.cls == APPLIED
        assert result.score == 6
        assert result.confidence == pytest.approx(0.84)
        assert "Application receipt(2)" in result.reason

    def test_rejection_beats_applied(self):
        result = classify(
            "Your application to Acme",
            "Thank you for applying. Unfortunately we are not moving forward with your candidacy.",
        )
        assert result.cls == REJECTION
        assert result.raw_scores[REJECTION] > result.raw_scores[APPLIED]
        assert 0 < result.confidence < 1

    def test_offer(self):
        result = classify("Offer letter", "We are excited to offer you the role. Your offer letter is attached.")
        assert result.cls == OFFER

    def test_real_interview_invite(self):
        result = classify(
            "Interview for Backend Engineer",
            "We'd like to schedule a phone screen. Please share your availability.",
        )
        assert result.cls == INTERVIEW
        assert "downgraded" not in result.reason

    def test_date_only_subject_rejected(self):
        result = classify("August 22, 2025", "")
        assert result.cls == ""
        assert result.confidence == 0.2
        assert result.reason == "date_only_subject"

    def test_no_rule_matched(self):
        result = classify("Lunch on Friday?", "Want to grab tacos?")
        assert result.cls == ""
        assert result.confidence == 0.0
        assert result.reason == "no rule matched"

    def test_digest_subject_never_interview(self):
        result = classify(
            "5 new jobs matching your search - LinkedIn",
            "Prepare for your next interview with these tips.",
        )
        assert result.cls != INTERVIEW
        assert result.cls == JOB_ALERT
        assert "pattern:job_alert_subject" in result.flags

    def test_interview_from_digest_vendor_downgraded(self):
        result = classify(
            "Interview stories from LinkedIn",
            "Read how candidates prepare for an interview at top companies.",
        )
        assert result.cls == JOB_ALERT
        assert result.reason.endswith("downgraded_to_job_alert_digest")
        assert "vendor:digest" in result.flags

    def test_digest_vendor_with_scheduling_language_stays_interview(self):
        result = classify(
            "Interview via LinkedIn",
            "Please confirm your availability for a zoom interview for the engineer role.",
        )
        assert result.cls == INTERVIEW

    def test_alert_subject_without_keywords_forced_to_job_alert(self):
        result = classify("Jobs on Wellfound this week", "")
        assert result.cls == JOB_ALERT
        assert result.score > 0

    def test_deterministic(self):
        args = ("Interview invitation", "Please pick a time for the technical screen.")
        assert classify(*args) == classify(*args)


class TestRelevanceGate:
    def test_alerts_excluded_by_default(self):
        subject, body = "Job alert: 12 new jobs", "new jobs for you"
        result = classify(subject, body)
        assert result.cls == JOB_ALERT
        assert not is_relevant(result, subject, body)
        assert is_relevant(result, subject, body, include_alerts=True)

    def test_interview_requires_role_context(self):
        subject, body = "Interview", "Let's talk about the interview."
        result = classify(subject, body)
        assert result.cls == INTERVIEW
        assert not is_relevant(result, subject, body)

    def test_interview_with_context_relevant(self):
        subject, body = "Interview", "Interview for the developer position."
        assert is_relevant(classify(subject, body), subject, body)

    def test_empty_class_not_relevant(self):
        assert not is_relevant(classify("August 22, 2025", ""), "August 22, 2025", "")


class TestClassifyHeader:
    def test_relevant_subject(self):
        verdict = classify_header("Interview invitation - Backend Engineer", "hr@acme.example")
        assert verdict.decision is HeaderDecision.RELEVANT
        assert verdict.reason == "relevant:interview"
        assert verdict.score == 6
        assert verdict.model_version == "v1"

    def test_digest_subject_skipped(self):
        verdict = classify_header("25 new jobs for Python developers")
        assert verdict.decision is HeaderDecision.SKIP
        assert verdict.reason.startswith("skip:")

    def test_unmatched_subject_ambiguous(self):
        verdict = classify_header("Lunch plans")
        assert verdict.decision is HeaderDecision.AMBIGUOUS
        assert verdict.score == 0.5
        assert verdict.reason == "no_rule_match"

    def test_empty_subject(self):
        verdict = classify_header("   ")
        assert verdict.decision is HeaderDecision.AMBIGUOUS
        assert verdict.reason == "empty_subject"

    def test_classify_at_dispatches_by_detail_level(self):
        header = classify_at(DetailLevel.HEADERS_ONLY, "Offer letter")
        full = classify_at(DetailLevel.FULL, "Offer letter", "pleased to offer")
        assert isinstance(header, HeaderClassification)
        assert header.decision is HeaderDecision.RELEVANT
        assert full.cls == OFFER
