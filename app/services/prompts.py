from app.services.answer_key_utils import STOP_TOKEN

SYSTEM_PROMPT = (
    "You are a careful answer generator for multiple-choice English exams. "
    "You must follow the output format exactly."
)

ROLE_FOCUS = {
    "general": (
        "You are an extremely careful solver for multiple-choice English exam questions."
    ),
    "lexical": (
        "You are a vocabulary specialist. Pay closest attention to word choice, "
        "collocations, underlined expressions and which word fits each context. "
        "Still answer every question on the page."
    ),
    "logic": (
        "You are a discourse-logic specialist. Pay closest attention to sentence "
        "order, where a given sentence should be inserted, connectives between "
        "sentences and which sentence breaks the flow. Still answer every question "
        "on the page."
    ),
    "reading": (
        "You are a reading-comprehension specialist. Pay closest attention to main "
        "ideas, titles, the writer's purpose, blank completion and details that do "
        "or do not match the passage. Still answer every question on the page."
    ),
    "grammar": (
        "You are a grammar specialist. Pay closest attention to agreement, tense, "
        "verb forms, relative pronouns and which underlined part is grammatically "
        "wrong. Still answer every question on the page."
    ),
}


def build_user_prompt(text: str, numbers: list[int], role: str = "general") -> str:
    number_list = ", ".join(str(n) for n in numbers)
    return "\n".join(
        [
            ROLE_FOCUS[role],
            "You will be given OCR text from an exam page. The OCR may contain "
            "noise, broken lines and misread characters.",
            "",
            "OCR_TEXT:",
            '"""',
            text,
            '"""',
            "",
            f"The question numbers present on this page are: {number_list}",
            "",
            "For EACH question number above, output EXACTLY ONE line in this format:",
            "N: <OPTION_LETTER>",
            "where N is the question number, and <OPTION_LETTER> is one of A, B, C, D, or E "
            "(① = A, ② = B, ③ = C, ④ = D, ⑤ = E).",
            "",
            "- Always use CAPITAL letters for options.",
            "- If you truly cannot determine the answer for a number, output `n/a` instead of a letter.",
            "",
            "After listing all answers, add a final line:",
            "UNSURE: <comma-separated list of question numbers you are least confident about, "
            "or '-' if you are confident for all>",
            "",
            f"Finally, end your output with the token {STOP_TOKEN} on the same line as the "
            "last content (do not add extra text after it).",
        ]
    )


def build_messages(text: str, numbers: list[int], role: str = "general") -> list[dict[str, str]]:
    if role not in ROLE_FOCUS:
        raise ValueError(f"Unknown role: {role}")
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": build_user_prompt(text, numbers, role)},
    ]
