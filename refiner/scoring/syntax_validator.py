"""
Syntax Validator
================
Static validation of generated Playwright (TypeScript) test code.

Pipeline:
    1. Bracket scan      - string/comment-aware delimiter balance
    2. Pattern scan      - known broken constructs (duplicate await, dangling chains)
    3. Warning scan      - style smells (.only, console.log, any)
    4. TypeScript check  - incomplete statements + type-coverage heuristic
    5. Playwright check  - imports, fixtures, test blocks, deprecated APIs
    6. Score             - subtractive penalties, then multiplied by the
                           type-coverage and API-usage factors so a single
                           severe defect dominates

Never raises: any input string yields a SyntaxValidationResult.
"""
import re
import logging
from dataclasses import dataclass, field
from typing import List, Tuple

from refiner.models.confidence import DimensionScore, ScoreDimension, SubScore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result Types
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class SyntaxIssue:
    line: int
    column: int
    message: str
    code: str
    severity: str = "error"


@dataclass(frozen=True)
class StyleWarning:
    line: int
    message: str
    suggestion: str


@dataclass
class TypeScriptCheck:
    compiles: bool
    errors: List[SyntaxIssue]
    type_inference_score: float


@dataclass
class PlaywrightCheck:
    has_valid_imports: bool
    uses_test_fixtures: bool
    has_valid_test_blocks: bool
    api_usage_score: float
    deprecated_apis: List[str] = field(default_factory=list)


@dataclass
class SyntaxValidationResult:
    valid: bool
    score: float
    errors: List[SyntaxIssue]
    warnings: List[StyleWarning]
    typescript: TypeScriptCheck
    playwright: PlaywrightCheck


# ---------------------------------------------------------------------------
# Pattern Tables
# ---------------------------------------------------------------------------
PLAYWRIGHT_IMPORTS = ["@playwright/test", "playwright"]

PLAYWRIGHT_TEST_PATTERNS = [
    re.compile(r"""test\s*\(\s*['"`]"""),
    re.compile(r"""test\.describe\s*\(\s*['"`]"""),
    re.compile(r"test\.beforeEach\s*\("),
    re.compile(r"test\.afterEach\s*\("),
    re.compile(r"test\.beforeAll\s*\("),
    re.compile(r"test\.afterAll\s*\("),
]

PLAYWRIGHT_FIXTURE_PATTERNS = [
    re.compile(r"\{\s*page\s*\}"),
    re.compile(r"\{\s*page\s*,"),
    re.compile(r",\s*page\s*\}"),
    re.compile(r"\{\s*browser\s*\}"),
    re.compile(r"\{\s*context\s*\}"),
    re.compile(r"\{\s*request\s*\}"),
]

# (pattern, api name, suggestion)
DEPRECATED_APIS: List[Tuple[re.Pattern, str, str]] = [
    (re.compile(r"page\.waitForTimeout\s*\(\s*\d+\s*\)"), "waitForTimeout with fixed delay",
     "Use waitForSelector or expect assertions"),
    (re.compile(r"page\.\$\("), "page.$()", "Use page.locator()"),
    (re.compile(r"page\.\$\$\("), "page.$$()", "Use page.locator().all()"),
    (re.compile(r"page\.waitForSelector\("), "waitForSelector", "Use locator.waitFor() or expect assertions"),
    (re.compile(r"elementHandle\."), "ElementHandle", "Use Locator API instead"),
    (re.compile(r"page\.click\("), "page.click()", "Use locator.click()"),
    (re.compile(r"page\.fill\("), "page.fill()", "Use locator.fill()"),
    (re.compile(r"page\.type\("), "page.type()", "Use locator.fill() or locator.pressSequentially()"),
]

SYNTAX_ERROR_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"await\s+await\s+"), "Duplicate await"),
    (re.compile(r"\(\s*\)\s*=>\s*\{[^}]*\Z"), "Unclosed arrow function"),
    (re.compile(r"expect\([^)]*\)\s*\.\s*$", re.MULTILINE), "Incomplete expect chain"),
    (re.compile(r"const\s+\w+\s*=\s*$", re.MULTILINE), "Incomplete variable declaration"),
]

SYNTAX_WARNING_PATTERNS: List[Tuple[re.Pattern, str, str]] = [
    (re.compile(r"//\s*TODO", re.IGNORECASE), "TODO comment found - incomplete implementation",
     "Complete the TODO items"),
    (re.compile(r"console\.log\("), "Console.log in test code", "Remove debug statements"),
    (re.compile(r"\.only\s*\("), ".only() will skip other tests", "Remove .only() before committing"),
    (re.compile(r"\.skip\s*\("), ".skip() found - test will not run", "Remove .skip() or add explanation"),
    (re.compile(r"\bany\s*[,)]"), 'Use of "any" type', "Add proper type annotations"),
    (re.compile(r"\bas\s+any\b"), "Type assertion to any", "Use proper type instead"),
]

_INCOMPLETE_STATEMENT_RE = re.compile(r"(?:const|let|var|function|class)\s+\w+\s*(?::|=)?\s*$", re.MULTILINE)

_PAIRS = {"(": ")", "[": "]", "{": "}"}
_CLOSERS = {")": "(", "]": "[", "}": "{"}
_STRUCTURAL_CODES = ("BRACKET_MISMATCH", "BRACKET_UNCLOSED", "STRING_UNTERMINATED")


# A '/' after one of these (or at line start) opens a regex literal, not a division
_REGEX_PRECEDERS = set("(,=:[!&|?{};+-*%<>~^")
_REGEX_KEYWORD_RE = re.compile(r"\b(?:return|typeof|case|of|in)$")


def _regex_literal_end(line: str, start: int) -> int:
    """
    Index just past the regex literal opening at ``line[start]``, or -1.

    Only single-line literals are recognised; character classes may hold '/'.
    """
    before = line[:start].rstrip()
    if before and before[-1] not in _REGEX_PRECEDERS and not _REGEX_KEYWORD_RE.search(before):
        return -1

    in_class = False
    col = start + 1
    while col < len(line):
        char = line[col]
        if char == "\\":
            col += 2
            continue
        if char == "[":
            in_class = True
        elif char == "]":
            in_class = False
        elif char == "/" and not in_class:
            col += 1
            while col < len(line) and line[col].isalpha():
                col += 1
            return col
        col += 1
    return -1


def _line_and_column(code: str, index: int) -> Tuple[int, int]:
    line = code.count("\n", 0, index) + 1
    column = index - (code.rfind("\n", 0, index) + 1) + 1
    return line, column


# ---------------------------------------------------------------------------
# Bracket Validation
# ---------------------------------------------------------------------------
def validate_brackets(code: str) -> List[SyntaxIssue]:
    """
    Check delimiter balance, ignoring brackets inside strings, comments and
    single-line regex literals.

    Quote and double-quote strings end at the line end (reported as
    unterminated); template literals may span lines. Escapes are honoured.
    """
    errors: List[SyntaxIssue] = []
    stack: List[Tuple[str, int, int]] = []
    string_char = ""
    in_block_comment = False
    lines = code.split("\n")

    for line_no, line in enumerate(lines, start=1):
        col = 0
        while col < len(line):
            char = line[col]
            next_char = line[col + 1] if col + 1 < len(line) else ""

            if in_block_comment:
                if char == "*" and next_char == "/":
                    in_block_comment = False
                    col += 1
                col += 1
                continue

            if string_char:
                if char == "\\":
                    col += 2
                    continue
                if char == string_char:
                    string_char = ""
                col += 1
                continue

            if char == "/" and next_char == "/":
                break
            if char == "/" and next_char == "*":
                in_block_comment = True
                col += 2
                continue
            if char == "/":
                end = _regex_literal_end(line, col)
                if end != -1:
                    col = end
                    continue
            if char in ("'", '"', "`"):
                string_char = char
            elif char in _PAIRS:
                stack.append((char, line_no, col + 1))
            elif char in _CLOSERS:
                if not stack:
                    errors.append(SyntaxIssue(line_no, col + 1, f"Unexpected closing '{char}'", "BRACKET_MISMATCH"))
                else:
                    opener = stack.pop()[0]
                    if opener != _CLOSERS[char]:
                        errors.append(SyntaxIssue(
                            line_no, col + 1,
                            f"Mismatched brackets: expected '{_PAIRS[opener]}' but found '{char}'",
                            "BRACKET_MISMATCH",
                        ))
            col += 1

        if string_char in ("'", '"') and not line.endswith("\\"):
            errors.append(SyntaxIssue(line_no, len(line), "Unterminated string literal", "STRING_UNTERMINATED"))
            string_char = ""

    for opener, line_no, column in stack:
        errors.append(SyntaxIssue(line_no, column, f"Unclosed '{opener}'", "BRACKET_UNCLOSED"))

    if string_char:
        errors.append(SyntaxIssue(len(lines), 1, "Unterminated string literal", "STRING_UNTERMINATED"))

    return errors


# ---------------------------------------------------------------------------
# Pattern Validation
# ---------------------------------------------------------------------------
def _validate_patterns(code: str) -> List[SyntaxIssue]:
    errors: List[SyntaxIssue] = []
    for pattern, message in SYNTAX_ERROR_PATTERNS:
        for match in pattern.finditer(code):
            line, column = _line_and_column(code, match.start())
            errors.append(SyntaxIssue(line, column, message, "PATTERN_ERROR"))
    return errors


def _check_warning_patterns(code: str) -> List[StyleWarning]:
    warnings: List[StyleWarning] = []
    for pattern, message, suggestion in SYNTAX_WARNING_PATTERNS:
        for match in pattern.finditer(code):
            warnings.append(StyleWarning(_line_and_column(code, match.start())[0], message, suggestion))
    return warnings


# ---------------------------------------------------------------------------
# TypeScript Validation
# ---------------------------------------------------------------------------
def _type_inference_score(code: str) -> float:
    score = 1.0
    score -= len(re.findall(r":\s*any\b", code)) * 0.1

    untyped = len(re.findall(r"\(\s*\w+\s*[,)]", code))
    typed = len(re.findall(r"\(\s*\w+\s*:", code))
    if untyped + typed > 0:
        score -= (untyped / (untyped + typed)) * 0.2

    # Explicit return types
    if re.search(r"\)\s*:\s*\w+", code):
        score += 0.1

    return max(0.0, min(1.0, score))


def _validate_typescript(code: str, structural_errors: List[SyntaxIssue]) -> TypeScriptCheck:
    errors = [
        SyntaxIssue(_line_and_column(code, m.start())[0], 1, "Incomplete statement", "TS_INCOMPLETE")
        for m in _INCOMPLETE_STATEMENT_RE.finditer(code)
    ]
    return TypeScriptCheck(
        # Unbalanced delimiters or strings never transpile
        compiles=not errors and not structural_errors,
        errors=errors,
        type_inference_score=_type_inference_score(code),
    )


# ---------------------------------------------------------------------------
# Playwright Validation
# ---------------------------------------------------------------------------
def _api_usage_score(code: str, deprecated: List[str]) -> float:
    score = 1.0 - len(deprecated) * 0.15

    if ".locator(" in code or "getBy" in code:
        score += 0.1
    if "expect(" in code and ").to" in code:
        score += 0.1
    if "test.step(" in code:
        score += 0.05

    # Hard waits of a second or more
    score -= len(re.findall(r"waitForTimeout\s*\(\s*\d{4,}", code)) * 0.2

    return max(0.0, min(1.0, score))


def _validate_playwright(code: str) -> PlaywrightCheck:
    deprecated = [api for pattern, api, _ in DEPRECATED_APIS if pattern.search(code)]
    return PlaywrightCheck(
        has_valid_imports=any(f"from '{imp}'" in code or f'from "{imp}"' in code for imp in PLAYWRIGHT_IMPORTS),
        uses_test_fixtures=any(p.search(code) for p in PLAYWRIGHT_FIXTURE_PATTERNS),
        has_valid_test_blocks=any(p.search(code) for p in PLAYWRIGHT_TEST_PATTERNS),
        api_usage_score=_api_usage_score(code, deprecated),
        deprecated_apis=deprecated,
    )


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------
def _syntax_score(
    errors: List[SyntaxIssue],
    warnings: List[StyleWarning],
    typescript: TypeScriptCheck,
    playwright: PlaywrightCheck,
) -> float:
    score = 1.0
    score -= sum(1 for e in errors if e.severity == "error") * 0.3
    score -= len(warnings) * 0.05

    if not typescript.compiles:
        score -= 0.4
    score *= 0.7 + 0.3 * typescript.type_inference_score

    if not playwright.has_valid_imports:
        score -= 0.2
    if not playwright.has_valid_test_blocks:
        score -= 0.3
    if not playwright.uses_test_fixtures:
        score -= 0.1
    score *= 0.7 + 0.3 * playwright.api_usage_score

    return max(0.0, min(1.0, score))


def validate_syntax(code: str) -> SyntaxValidationResult:
    """Run every syntax check over ``code`` and score it in [0, 1]."""
    structural = validate_brackets(code)
    errors = structural + _validate_patterns(code)
    warnings = _check_warning_patterns(code)
    typescript = _validate_typescript(code, structural)
    errors.extend(typescript.errors)
    playwright = _validate_playwright(code)

    score = _syntax_score(errors, warnings, typescript, playwright)
    logger.debug("Syntax: %d error(s), %d warning(s), score=%.2f", len(errors), len(warnings), score)

    return SyntaxValidationResult(
        valid=not any(e.severity == "error" for e in errors),
        score=score,
        errors=errors,
        warnings=warnings,
        typescript=typescript,
        playwright=playwright,
    )


def _syntax_reasoning(result: SyntaxValidationResult) -> str:
    reasons = []
    if result.errors:
        reasons.append(f"{len(result.errors)} syntax error(s) found")
    if result.warnings:
        reasons.append(f"{len(result.warnings)} warning(s)")
    if not result.typescript.compiles:
        reasons.append("TypeScript compilation failed")
    if not result.playwright.has_valid_imports:
        reasons.append("Missing Playwright imports")
    if not result.playwright.has_valid_test_blocks:
        reasons.append("No valid test blocks found")
    if result.playwright.deprecated_apis:
        reasons.append(f"{len(result.playwright.deprecated_apis)} deprecated API(s) used")
    return "; ".join(reasons) or "Syntax is valid"


def create_syntax_dimension_score(result: SyntaxValidationResult, weight: float) -> DimensionScore:
    ts, pw = result.typescript, result.playwright
    return DimensionScore(
        dimension=ScoreDimension.SYNTAX,
        score=result.score,
        weight=weight,
        reasoning=_syntax_reasoning(result),
        sub_scores=[
            SubScore(name="TypeScript Compilation", score=1.0 if ts.compiles else 0.0,
                     details="Code compiles" if ts.compiles else "Compilation errors found"),
            SubScore(name="Type Inference", score=ts.type_inference_score,
                     details=f"Type coverage: {round(ts.type_inference_score * 100)}%"),
            SubScore(name="Playwright API Usage", score=pw.api_usage_score,
                     details=f"API correctness: {round(pw.api_usage_score * 100)}%"),
            SubScore(name="Test Structure", score=1.0 if pw.has_valid_test_blocks else 0.3,
                     details="Valid test blocks" if pw.has_valid_test_blocks else "Missing test blocks"),
        ],
    )


# ---------------------------------------------------------------------------
# Quick Checks
# ---------------------------------------------------------------------------
def quick_syntax_check(code: str) -> bool:
    """Has a test block and balanced delimiters."""
    if "test(" not in code and "test.describe(" not in code:
        return False
    return not validate_brackets(code)


def get_deprecated_apis(code: str) -> List[Tuple[str, str]]:
    """(api, suggestion) for every deprecated API used."""
    return [(api, suggestion) for pattern, api, suggestion in DEPRECATED_APIS if pattern.search(code)]
