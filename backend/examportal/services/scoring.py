"""
Scoring for submitted attempts.

Choice questions are marked by exact string comparison with the stored
answer index. Short-answer questions get a keyword heuristic score that
stands until a teacher replaces it with a manual mark.
"""
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Mapping, NamedTuple, Optional, Sequence

from ..schemas.exam import (
    ExamBase,
    MultipleChoiceQuestion,
    Question,
    ShortAnswerQuestion,
    TrueFalseQuestion,
)
from ..schemas.submission import ExamWarning, Submission
from ..utils.timezone import minutes_between, utc_now

PUNCTUATION = ".,/#!$%^&*;:{}=-_`~()"
_PUNCTUATION_TABLE = str.maketrans("", "", PUNCTUATION)

KEYWORD_MIN_LENGTH = 3

# (minimum match ratio, share of the question's points)
KEYWORD_TIERS = (
    (0.8, 1.0),
    (0.6, 0.75),
    (0.4, 0.5),
    (0.2, 0.25),
)


class AttemptEvaluation(NamedTuple):
    score: int
    max_score: int
    question_scores: Dict[str, int]
    needs_evaluation: bool


def round_half_up(value: float) -> int:
    """Round .5 away from zero, like Math.round for the positive values used here"""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_percentage(score: int, max_score: int) -> int:
    if max_score <= 0:
        return 0
    return round_half_up(score / max_score * 100)


def normalize_answer(text: str) -> str:
    return text.lower().translate(_PUNCTUATION_TABLE)


def extract_keywords(model_answer: str) -> List[str]:
    """Whitespace tokens of the normalized model answer, repeats included"""
    return [token for token in normalize_answer(model_answer).split() if len(token) >= KEYWORD_MIN_LENGTH]


def keyword_tier(match_ratio: float) -> float:
    for minimum, share in KEYWORD_TIERS:
        if match_ratio >= minimum:
            return share
    return 0.0


def score_short_answer(question: ShortAnswerQuestion, answer: str) -> int:
    if not answer:
        return 0

    keywords = extract_keywords(question.model_answer)
    if not keywords:
        return 0

    normalized = normalize_answer(answer)
    matched = sum(1 for keyword in keywords if keyword in normalized)
    return round_half_up(question.points * keyword_tier(matched / len(keywords)))


def score_objective(question, answer: str) -> int:
    return question.points if answer == question.correct_answer else 0


def score_question(question: Question, answer: Optional[str]) -> int:
    answer = answer or ""
    if isinstance(question, (MultipleChoiceQuestion, TrueFalseQuestion)):
        return score_objective(question, answer)
    if isinstance(question, ShortAnswerQuestion):
        return score_short_answer(question, answer)
    raise TypeError(f"Unsupported question type: {type(question).__name__}")


def evaluate_answers(exam: ExamBase, answers: Mapping[str, str]) -> AttemptEvaluation:
    question_scores = {
        question.id: score_question(question, answers.get(question.id))
        for question in exam.questions
    }
    return AttemptEvaluation(
        score=sum(question_scores.values()),
        max_score=exam.max_score,
        question_scores=question_scores,
        needs_evaluation=exam.has_subjective_questions,
    )


def build_submission(
    exam,
    student_id: str,
    answers: Mapping[str, str],
    warning_count: int,
    warnings: Sequence[ExamWarning],
    start_time: datetime,
    end_time: datetime,
    time_taken: Optional[int] = None,
) -> Submission:
    """Score an attempt and shape the record the repository persists"""
    evaluation = evaluate_answers(exam, answers)
    percentage = calculate_percentage(evaluation.score, evaluation.max_score)
    if time_taken is None:
        time_taken = round_half_up(minutes_between(start_time, end_time))

    return Submission(
        exam_id=exam.id,
        student_id=student_id,
        answers={question.id: answers.get(question.id, "") for question in exam.questions},
        start_time=start_time,
        end_time=end_time,
        time_taken=time_taken,
        score=evaluation.score,
        max_score=evaluation.max_score,
        percentage=percentage,
        question_scores=evaluation.question_scores,
        warning_count=warning_count,
        warnings=list(warnings),
        needs_evaluation=evaluation.needs_evaluation,
        evaluation_complete=not evaluation.needs_evaluation,
        passed=percentage >= exam.passing_score,
    )


def apply_manual_evaluation(exam: ExamBase, submission: Submission, manual_scores: Mapping[str, int]) -> Submission:
    """
    Replace every short-answer contribution with the teacher's marks and
    recompute the totals. Choice-question scores are kept as submitted.
    """
    short_answers = {q.id: q for q in exam.questions if isinstance(q, ShortAnswerQuestion)}
    if not short_answers:
        raise ValueError("This exam has no short-answer questions to evaluate")

    unknown = set(manual_scores) - set(short_answers)
    if unknown:
        raise ValueError(f"Not short-answer questions of this exam: {', '.join(sorted(unknown))}")

    missing = set(short_answers) - set(manual_scores)
    if missing:
        raise ValueError(f"Missing scores for: {', '.join(sorted(missing))}")

    for question_id, points in manual_scores.items():
        limit = short_answers[question_id].points
        if points < 0 or points > limit:
            raise ValueError(f"Score for {question_id} must be between 0 and {limit}")

    question_scores = dict(submission.question_scores)
    for question in exam.questions:
        if question.id not in question_scores:
            question_scores[question.id] = score_question(question, submission.answers.get(question.id))
    question_scores.update(manual_scores)

    score = sum(question_scores[q.id] for q in exam.questions)
    max_score = exam.max_score
    percentage = calculate_percentage(score, max_score)

    return submission.model_copy(update={
        "question_scores": question_scores,
        "score": score,
        "max_score": max_score,
        "percentage": percentage,
        "passed": percentage >= exam.passing_score,
        "needs_evaluation": False,
        "evaluation_complete": True,
        "evaluated_at": utc_now(),
    })
