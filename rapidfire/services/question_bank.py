import logging
import random

from sqlalchemy.orm import Session

from rapidfire.errors import QuestionBankExhausted
from rapidfire.models import Question

logger = logging.getLogger(__name__)

# 3 DSA, 3 System Design, 2 AI/ML, 2 Aptitude
QUESTION_DISTRIBUTION: dict[str, int] = {
    "dsa": 3,
    "system-design": 3,
    "aiml": 2,
    "aptitude": 2,
}

SEED_QUESTIONS = [
    {"domain": "dsa", "difficulty": "easy", "text": "What is the worst-case time complexity of binary search?",
     "options": ["O(n)", "O(log n)", "O(n log n)", "O(1)"], "correct_option": 1,
     "explanation": "Each step halves the remaining range."},
    {"domain": "dsa", "difficulty": "medium", "text": "Which data structure backs a typical LRU cache?",
     "options": ["Heap", "Trie", "Hash map plus doubly linked list", "Segment tree"], "correct_option": 2,
     "explanation": "The map gives O(1) lookup, the list keeps recency order."},
    {"domain": "dsa", "difficulty": "medium", "text": "Which traversal of a binary search tree yields sorted keys?",
     "options": ["Pre-order", "In-order", "Post-order", "Level-order"], "correct_option": 1,
     "explanation": None},
    {"domain": "dsa", "difficulty": "hard", "text": "Dijkstra's algorithm fails on graphs with which property?",
     "options": ["Cycles", "Negative edge weights", "Undirected edges", "More than 1000 nodes"],
     "correct_option": 1, "explanation": "A settled vertex may later be improved through a negative edge."},
    {"domain": "system-design", "difficulty": "easy", "text": "What does a CDN primarily reduce?",
     "options": ["Database writes", "Latency for static content", "CPU usage of clients", "DNS lookups"],
     "correct_option": 1, "explanation": None},
    {"domain": "system-design", "difficulty": "medium",
     "text": "Which technique spreads keys across shards while limiting remapping when nodes change?",
     "options": ["Round robin", "Consistent hashing", "Sticky sessions", "Two-phase commit"],
     "correct_option": 1, "explanation": None},
    {"domain": "system-design", "difficulty": "medium", "text": "The CAP theorem trades off consistency and availability under what?",
     "options": ["High load", "Network partitions", "Disk failure", "Clock skew"], "correct_option": 1,
     "explanation": None},
    {"domain": "system-design", "difficulty": "hard", "text": "What makes a retried request safe to apply twice?",
     "options": ["Encryption", "Idempotency", "Compression", "Caching"], "correct_option": 1,
     "explanation": "An idempotent operation has the same effect no matter how often it runs."},
    {"domain": "aiml", "difficulty": "easy", "text": "Overfitting usually shows up as what?",
     "options": ["High train and test error", "Low train error, high test error", "Low test error only",
                 "Slow training"], "correct_option": 1, "explanation": None},
    {"domain": "aiml", "difficulty": "medium", "text": "Which activation function outputs values in (0, 1)?",
     "options": ["ReLU", "Tanh", "Sigmoid", "Linear"], "correct_option": 2, "explanation": None},
    {"domain": "aiml", "difficulty": "medium", "text": "What does dropout do during training?",
     "options": ["Removes samples", "Randomly zeroes activations", "Lowers the learning rate", "Prunes layers"],
     "correct_option": 1, "explanation": None},
    {"domain": "aptitude", "difficulty": "easy", "text": "A train covers 120 km in 2 hours. What is its speed?",
     "options": ["40 km/h", "60 km/h", "80 km/h", "240 km/h"], "correct_option": 1, "explanation": None},
    {"domain": "aptitude", "difficulty": "medium", "text": "What is the next number: 2, 6, 12, 20, 30, ?",
     "options": ["36", "40", "42", "44"], "correct_option": 2, "explanation": "Differences grow by 2."},
    {"domain": "aptitude", "difficulty": "medium", "text": "If 5 workers finish a job in 12 days, how long do 6 workers take?",
     "options": ["8 days", "10 days", "11 days", "14 days"], "correct_option": 1, "explanation": None},
]


def seed_question_bank(db: Session) -> int:
    """Заполняет банк вопросов, если он пуст. Возвращает число добавленных."""
    if db.query(Question).first():
        return 0
    for item in SEED_QUESTIONS:
        db.add(Question(**item))
    db.commit()
    logger.info("Seeded question bank with %s questions", len(SEED_QUESTIONS))
    return len(SEED_QUESTIONS)


def pick_question_set(db: Session, rng: random.Random | None = None) -> list[int]:
    """
    Подбирает набор вопросов по фиксированному распределению категорий.

    Возвращает:
        list[int]: Идентификаторы вопросов в порядке показа
    """
    rng = rng or random.Random()
    selected: list[int] = []
    for domain, count in QUESTION_DISTRIBUTION.items():
        pool = [
            row.id
            for row in db.query(Question.id).filter(Question.domain == domain, Question.is_active.is_(True)).all()
        ]
        if len(pool) < count:
            raise QuestionBankExhausted(f"Domain '{domain}' has {len(pool)} of {count} required questions")
        selected.extend(rng.sample(pool, count))

    rng.shuffle(selected)
    return selected


def load_questions(db: Session, question_ids: list[int]) -> list[Question]:
    """Возвращает вопросы в порядке набора сессии."""
    rows = {q.id: q for q in db.query(Question).filter(Question.id.in_(question_ids)).all()}
    return [rows[qid] for qid in question_ids if qid in rows]
