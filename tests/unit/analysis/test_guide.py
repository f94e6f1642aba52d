"""Tests for discussion guide parsing."""

from __future__ import annotations

import json

import pytest

from qualflow.analysis.guide import DEFAULT_SECTION, Question, parse_guide


@pytest.mark.parametrize("guide", [None, "", "   \n", "42", '"just a string"', '{"title": "no sections"}'])
def test_no_questions(guide):
    assert parse_guide(guide) == []


def test_json_sections_and_subsections():
    guide = json.dumps({
        "sections": [
            {
                "title": "Background",
                "questions": [{"id": "B1", "text": "Tell me about your role."}, {"text": "  How long?  "}],
                "subsections": [
                    {"title": "Team", "questions": [{"text": "Who do you work with?"}]},
                ],
            },
            {"title": "Treatment", "questions": [{"id": "T1", "text": ""}, "What is your first choice?"]},
        ]
    })
    assert parse_guide(guide) == [
        Question(id="B1", text="Tell me about your role.", section="Background"),
        Question(id="Q_2", text="How long?", section="Background"),
        Question(id="Q_3", text="Who do you work with?", section="Background - Team"),
        Question(id="Q_4", text="What is your first choice?", section="Treatment"),
    ]


def test_json_theme_list():
    guide = json.dumps([
        {"theme": "Access", "question": "How do patients get the drug?"},
        {"question": "Anything else?"},
        {"theme": "ignored, no question"},
    ])
    assert parse_guide(guide) == [
        Question(id="Q_1", text="How do patients get the drug?", section="Access"),
        Question(id="Q_2", text="Anything else?", section=DEFAULT_SECTION),
    ]


def test_plain_text_guide():
    guide = """
    A. Introduction
    - Thank you for joining us today
    - Describe your current clinical role
    B. Treatment Decisions
    1. What drives your first-line choice?
    2) Which side effects concern you most
    How do you discuss cost with patients?
    Short?
    This line is context, not a question.
    II. Wrap up
    C. Is this a header or a question?
    """
    questions = parse_guide(guide)
    assert [(q.id, q.section, q.text) for q in questions] == [
        ("Q_1", "Introduction", "Describe your current clinical role"),
        ("Q_2", "Treatment Decisions", "What drives your first-line choice?"),
        ("Q_3", "Treatment Decisions", "Which side effects concern you most"),
        ("Q_4", "Treatment Decisions", "How do you discuss cost with patients?"),
        ("Q_5", "Wrap up", "C. Is this a header or a question?"),
    ]
