"""Правила подсчета очков и рейтинга Rapid Fire."""

CORRECT_POINTS = 1.0
WRONG_PENALTY = 0.5

DEFAULT_RATING = 1200
RATING_FLOOR = 800
ELO_K_FACTOR = 32

ACTUAL_SCORES = {"win": 1.0, "draw": 0.5, "lose": 0.0}


def score_delta(is_correct: bool) -> float:
    return CORRECT_POINTS if is_correct else -WRONG_PENALTY


def final_score(correct_answers: int, wrong_answers: int) -> float:
    """Unanswered questions contribute nothing; the total is never clamped."""
    return correct_answers * CORRECT_POINTS - wrong_answers * WRONG_PENALTY


def expected_score(rating: int, opponent_rating: int) -> float:
    return 1 / (1 + 10 ** ((opponent_rating - rating) / 400))


def elo_change(rating: int, opponent_rating: int, outcome: str, k_factor: int = ELO_K_FACTOR) -> int:
    """
    Изменение рейтинга по Эло.

    Аргументы:
        rating (int): Рейтинг игрока до матча
        opponent_rating (int): Рейтинг соперника до матча
        outcome (str): "win", "draw" или "lose"

    Возвращает:
        int: Округленное изменение рейтинга
    """
    actual = ACTUAL_SCORES[outcome]
    return round(k_factor * (actual - expected_score(rating, opponent_rating)))


def apply_rating(rating: int, change: int) -> int:
    return max(RATING_FLOOR, rating + change)
