import re
from dataclasses import dataclass, field

VALID_OPTIONS = ("A", "B", "C", "D", "E")
OPTION_ALIASES = {
    "①": "A",
    "②": "B",
    "③": "C",
    "④": "D",
    "⑤": "E",
    "1": "A",
    "2": "B",
    "3": "C",
    "4": "D",
    "5": "E",
}
STOP_TOKEN = "XURTH"

NUMBER_RE = re.compile(r"\b(\d{1,2})\s*[.)]", re.ASCII)
DOUBLED_NUMBER_RE = re.compile(r"\b(\d{2})(\1)\s*\.", re.ASCII)
SEGMENT_START_RE = re.compile(r"(?m)^\s*(?:(\d{2})\1|(\d{1,2}))\s*[.)]", re.ASCII)
ANSWER_LINE_RE = re.compile(
    r"^[\s*\-]*(?:Q(?:uestion)?\s*)?(\d{1,2})\**\s*[:.)\-=]\s*\**\(?\s*"
    r"(n/?a|[A-Ea-e①②③④⑤1-5])(?![A-Za-z0-9])",
    re.IGNORECASE,
)
UNSURE_RE = re.compile(r"^\s*UNSURE\s*:\s*(.*)$", re.IGNORECASE | re.MULTILINE)

MATCHED_ROLE_WEIGHT = 2.0
DEFAULT_ROLE_WEIGHT = 1.0
UNSURE_FACTOR = 0.5
HIGH_CONFIDENCE = 0.75
MEDIUM_CONFIDENCE = 0.5

# Checked in order; the first type with a keyword hit wins.
QUESTION_TYPE_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("grammar", ("grammatical", "grammatically", "어법", "문법")),
    ("lexical", ("vocabulary", "어휘", "낱말", "synonym", "closest in meaning", "underlined word", "쓰임")),
    ("logic", ("order of", "순서", "insert", "들어가기에", "irrelevant", "무관한", "흐름", "sequence")),
    ("reading", ("main idea", "title", "purpose", "topic", "주제", "제목", "요지", "목적", "blank", "빈칸", "일치")),
]


@dataclass
class RoleResponse:
    role: str
    answers: dict[int, str] = field(default_factory=dict)
    abstained: set[int] = field(default_factory=set)
    unsure: set[int] = field(default_factory=set)
    extras: list[int] = field(default_factory=list)


def extract_question_numbers(text: str, max_number: int = 50) -> tuple[list[str], list[int]]:
    """Find visible question numbers in OCR text.

    Besides plain ``12.`` / ``12)`` markers this also catches the doubled
    two-digit artifact OCR produces for boxed numbers (``0101.`` is question 1).
    Returns the raw matched strings and the unique, sorted numbers in range.
    """
    if not text:
        return [], []

    raw_numbers = [match.group(1) for match in NUMBER_RE.finditer(text)]
    raw_numbers.extend(match.group(2) for match in DOUBLED_NUMBER_RE.finditer(text))

    normalized = sorted(
        {int(value) for value in raw_numbers if 1 <= int(value) <= max_number}
    )
    return raw_numbers, normalized


def segment_questions(text: str, numbers: list[int]) -> dict[int, str]:
    wanted = set(numbers)
    starts: list[tuple[int, int]] = []
    for match in SEGMENT_START_RE.finditer(text or ""):
        number = int(match.group(1) or match.group(2))
        if number in wanted:
            starts.append((match.start(), number))

    segments: dict[int, str] = {}
    for idx, (start, number) in enumerate(starts):
        end = starts[idx + 1][0] if idx + 1 < len(starts) else len(text)
        segments.setdefault(number, text[start:end].strip())
    return segments


def detect_question_type(segment: str) -> str:
    lowered = (segment or "").lower()
    if not lowered:
        return "unknown"
    for question_type, keywords in QUESTION_TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return question_type
    return "unknown"


def detect_question_types(text: str, numbers: list[int]) -> dict[int, str]:
    segments = segment_questions(text, numbers)
    return {number: detect_question_type(segments.get(number, "")) for number in numbers}


def normalize_option(token: str | None) -> str | None:
    if token is None:
        return None
    value = token.strip().strip("()[]").strip().upper()
    if value in VALID_OPTIONS:
        return value
    return OPTION_ALIASES.get(value)


def _strip_stop_token(text: str) -> str:
    return (text or "").replace(STOP_TOKEN, "")


def parse_unsure_line(text: str) -> set[int]:
    matches = UNSURE_RE.findall(_strip_stop_token(text))
    if not matches:
        return set()
    return {int(value) for value in re.findall(r"\d{1,2}", matches[-1])}


def parse_answer_lines(text: str, expected: list[int], role: str = "general") -> RoleResponse:
    response = RoleResponse(role=role)
    wanted = set(expected)
    seen: set[int] = set()

    for line in _strip_stop_token(text).splitlines():
        match = ANSWER_LINE_RE.match(line)
        if match is None:
            continue
        number = int(match.group(1))
        if number not in wanted:
            if number not in response.extras:
                response.extras.append(number)
            continue
        if number in seen:
            continue
        seen.add(number)

        token = match.group(2)
        if token.upper().replace("/", "") == "NA":
            response.abstained.add(number)
            continue
        option = normalize_option(token)
        if option is None:
            response.abstained.add(number)
        else:
            response.answers[number] = option

    response.unsure = parse_unsure_line(text) & wanted
    return response


def role_weight(role: str, question_type: str) -> float:
    if question_type != "unknown" and role == question_type:
        return MATCHED_ROLE_WEIGHT
    return DEFAULT_ROLE_WEIGHT


def tally_votes(
    responses: list[RoleResponse],
    expected: list[int],
    question_types: dict[int, str] | None = None,
) -> dict[int, dict]:
    """Weighted majority vote per question across role responses.

    A role's vote counts double on questions whose detected type matches the
    role, and half when the role listed the question as UNSURE. Candidates
    rank by ``(-weight, -count, letter)``.
    """
    question_types = question_types or {}
    tallies: dict[int, dict] = {}

    for q in expected:
        q_type = question_types.get(q, "unknown")
        counts: dict[str, int] = {}
        weights: dict[str, float] = {}
        available = 0.0
        for response in responses:
            weight = role_weight(response.role, q_type)
            available += weight
            option = response.answers.get(q)
            if option is None:
                continue
            if q in response.unsure:
                weight *= UNSURE_FACTOR
            counts[option] = counts.get(option, 0) + 1
            weights[option] = weights.get(option, 0.0) + weight

        ranked = sorted(
            counts.items(),
            key=lambda item: (-weights[item[0]], -item[1], item[0]),
        )
        tallies[q] = {
            "ranked": [(option, count, round(weights[option], 4)) for option, count in ranked],
            "available": available,
            "type": q_type,
        }
    return tallies


def _confidence_level(confidence: float) -> str:
    if confidence >= HIGH_CONFIDENCE:
        return "high"
    if confidence >= MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


def fallback_option(decided: list[str]) -> str:
    usage = {option: 0 for option in VALID_OPTIONS}
    for option in decided:
        if option in usage:
            usage[option] += 1
    return sorted(usage.items(), key=lambda item: (item[1], item[0]))[0][0]


def finalize_answer_key(tallies: dict[int, dict]) -> list[dict]:
    entries: dict[int, dict] = {}
    missing: list[int] = []

    for q in sorted(tallies):
        tally = tallies[q]
        if not tally["ranked"]:
            missing.append(q)
            continue
        best_option, best_count, best_weight = tally["ranked"][0]
        available = tally["available"]
        confidence = round(best_weight / available, 2) if available > 0 else 0.0
        entries[q] = {
            "number": q,
            "answer": best_option,
            "confidence": confidence,
            "level": _confidence_level(confidence),
            "votes": {option: count for option, count, _ in tally["ranked"]},
            "fallback": False,
            "type": tally["type"],
        }

    # Missing numbers get the option least used among voted answers.
    guess = fallback_option([entry["answer"] for entry in entries.values()])
    for q in missing:
        entries[q] = {
            "number": q,
            "answer": guess,
            "confidence": 0.0,
            "level": "low",
            "votes": {},
            "fallback": True,
            "type": tallies[q]["type"],
        }

    return [entries[q] for q in sorted(entries)]


def low_confidence_numbers(entries: list[dict]) -> list[int]:
    return [entry["number"] for entry in entries if entry["level"] == "low"]


def format_answer_key(entries: list[dict]) -> str:
    lines = [f"{entry['number']}: {entry['answer']}" for entry in entries]
    unsure = low_confidence_numbers(entries)
    lines.append("UNSURE: " + (", ".join(str(q) for q in unsure) if unsure else "-"))
    return "\n".join(lines)
