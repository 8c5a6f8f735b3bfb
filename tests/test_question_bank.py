import random
from collections import Counter

import pytest

from rapidfire.errors import QuestionBankExhausted
from rapidfire.models import Question
from rapidfire.services.question_bank import (
    QUESTION_DISTRIBUTION,
    load_questions,
    pick_question_set,
    seed_question_bank,
)


def test_seed_is_idempotent(db):
    assert seed_question_bank(db) == 0
    assert db.query(Question).count() > 0


def test_pick_follows_category_mix(db):
    ids = pick_question_set(db, random.Random(7))
    assert len(ids) == sum(QUESTION_DISTRIBUTION.values()) == 10
    assert len(set(ids)) == len(ids)
    domains = Counter(q.domain for q in load_questions(db, ids))
    assert dict(domains) == QUESTION_DISTRIBUTION


def test_load_questions_keeps_set_order(db):
    ids = pick_question_set(db, random.Random(1))
    assert [q.id for q in load_questions(db, ids)] == ids


def test_exhausted_domain_raises(db):
    db.query(Question).filter(Question.domain == "aiml").update({Question.is_active: False})
    db.commit()
    with pytest.raises(QuestionBankExhausted):
        pick_question_set(db)
