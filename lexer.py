from __future__ import annotations
from dataclasses import dataclass
from typing import Any, List, Optional


class LoopError(Exception):
    """Base class for interpreter errors."""

    kind = "Loop"

    def __init__(self, message: str, line: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.line = line

    def __str__(self) -> str:
        if self.line is None:
            return f"{self.kind}Error: {self.message}"
        return f"{self.kind}Error (Line {self.line}): {self.message}"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "line": self.line}


class LoopLexError(LoopError):
    """Raised when tokenization fails."""

    kind = "Lex"


class LoopParseError(LoopError):
    """Raised when parsing fails."""

    kind = "Parse"


@dataclass(frozen=True)
class Token:
    type: str
    lexeme: str
    literal: Any
    line: int
    column: int


STRUCTURAL = {"INDENT", "DEDENT", "NEWLINE", "EOF"}

KEYWORDS = {
    "if": "IF",
    "elif": "ELIF",
    "else": "ELSE",
    "while": "WHILE",
    "for": "FOR",
    "def": "DEF",
    "return": "RETURN",
    "class": "CLASS",
    "break": "BREAK",
    "continue": "CONTINUE",
    "pass": "PASS",
    "global": "GLOBAL",
    "lambda": "LAMBDA",
    "import": "IMPORT",
    "and": "AND",
    "or": "OR",
    "not": "NOT",
    "in": "IN",
    "is": "IS",
    "True": "TRUE",
    "False": "FALSE",
    "None": "NONE",
}

# Longest operators first so that "**" wins over "*" and "<<" over "<".
OPERATORS = [
    ("**", "DOUBLE_STAR"),
    ("==", "EQUAL_EQUAL"),
    ("!=", "BANG_EQUAL"),
    ("<=", "LESS_EQUAL"),
    (">=", "GREATER_EQUAL"),
    ("<<", "LEFT_SHIFT"),
    (">>", "RIGHT_SHIFT"),
    ("+=", "PLUS_EQUAL"),
    ("-=", "MINUS_EQUAL"),
    ("*=", "STAR_EQUAL"),
    ("/=", "SLASH_EQUAL"),
    ("+", "PLUS"),
    ("-", "MINUS"),
    ("*", "STAR"),
    ("/", "SLASH"),
    ("%", "PERCENT"),
    ("<", "LESS"),
    (">", "GREATER"),
    ("=", "EQUAL"),
    ("&", "AMPERSAND"),
    ("|", "PIPE"),
    ("^", "CARET"),
    ("~", "TILDE"),
]

SYMBOLS = {
    "(": "LPAREN",
    ")": "RPAREN",
    "[": "LBRACKET",
    "]": "RBRACKET",
    "{": "LBRACE",
    "}": "RBRACE",
    ",": "COMMA",
    ".": "DOT",
    ":": "COLON",
}

CLOSERS = {")": "(", "]": "[", "}": "{"}

DIGITS = "0123456789"
IDENT_START = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ_"
IDENT_PART = IDENT_START + DIGITS

ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'"}

INDENT_WIDTH = 4


def clean_source(text: Optional[str]) -> str:
    if text is None:
        text = ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = text.replace("\t", " " * INDENT_WIDTH)
    for invisible in ("\v", "\f", "\ufeff"):
        text = text.replace(invisible, "")
    if not text.endswith("\n"):
        text += "\n"
    return text


class Lexer:
    def __init__(self, text: str) -> None:
        self.text = clean_source(text)
        self.index = 0
        self.line = 1
        self.column = 1
        self.indent_stack: List[int] = [0]
        # Open brackets; while non-empty, newlines and indentation are ignored.
        self.brackets: List[str] = []

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        text = self.text
        n = len(text)
        at_line_start = True

        while self.index < n:
            if at_line_start and not self.brackets:
                width = self._count_leading_spaces()
                if self._eof:
                    break
                ch = text[self.index]
                if ch == "\n":
                    _advance()
                    continue
                if ch == "#" or text.startswith("//", self.index):
                    self._consume_comment()
                    continue
                self._process_indentation(width, tokens)
                at_line_start = False

            ch = text[self.index]
            if ch == " ":
                _advance()
                continue
            if ch == "\n":
                if not self.brackets:
                    tokens_append(Token("NEWLINE", "\n", None, self.line, self.column))
                    at_line_start = True
                _advance()
                continue
            if ch == "#" or text.startswith("//", self.index):
                self._consume_comment()
                continue
            if ch in ('"', "'"):
                tokens_append(self._consume_string())
                continue
            if ch in DIGITS:
                tokens_append(self._consume_number())
                continue
            if ch in IDENT_START:
                tokens_append(self._consume_identifier())
                continue
            if ch in SYMBOLS:
                self._track_bracket(ch)
                tokens_append(Token(SYMBOLS[ch], ch, None, self.line, self.column))
                _advance()
                continue
            operator = self._match_operator()
            if operator is not None:
                lexeme, token_type = operator
                tokens_append(Token(token_type, lexeme, None, self.line, self.column))
                for _ in lexeme:
                    _advance()
                continue
            raise LoopLexError(f"Unexpected character '{ch}'", self.line)

        if self.brackets:
            raise LoopLexError(f"Unclosed '{self.brackets[-1]}' at end of input", self.line)
        if tokens and tokens[-1].type not in ("NEWLINE", "DEDENT", "INDENT"):
            tokens_append(Token("NEWLINE", "\n", None, self.line, self.column))
        while len(self.indent_stack) > 1:
            self.indent_stack.pop()
            tokens_append(Token("DEDENT", "", None, self.line, self.column))
        tokens_append(Token("EOF", "", None, self.line, self.column))
        return tokens

    def _count_leading_spaces(self) -> int:
        count = 0
        text = self.text
        n = len(text)
        while self.index < n and text[self.index] == " ":
            count += 1
            self._advance()
        return count

    def _process_indentation(self, width: int, tokens: List[Token]) -> None:
        current = self.indent_stack[-1]
        if width > current:
            if width % INDENT_WIDTH != 0:
                raise LoopLexError(f"Indentation must be a multiple of {INDENT_WIDTH} spaces", self.line)
            self.indent_stack.append(width)
            tokens.append(Token("INDENT", "", None, self.line, 1))
            return
        while self.indent_stack[-1] > width:
            self.indent_stack.pop()
            tokens.append(Token("DEDENT", "", None, self.line, 1))
        if self.indent_stack[-1] != width:
            raise LoopLexError("Indentation mismatch - dedent does not match any outer indentation level", self.line)

    def _track_bracket(self, ch: str) -> None:
        if ch in "([{":
            self.brackets.append(ch)
            return
        opener = CLOSERS.get(ch)
        if opener is None:
            return
        if not self.brackets or self.brackets[-1] != opener:
            raise LoopLexError(f"Unmatched '{ch}'", self.line)
        self.brackets.pop()

    def _match_operator(self) -> Optional[tuple]:
        for lexeme, token_type in OPERATORS:
            if self.text.startswith(lexeme, self.index):
                return lexeme, token_type
        if self._peek() == "!":
            raise LoopLexError("Unexpected character '!'", self.line)
        return None

    def _consume_comment(self) -> None:
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] != "\n":
            _advance()

    def _consume_number(self) -> Token:
        line, col = self.line, self.column
        start = self.index
        text = self.text
        while not self._eof and self._peek() in DIGITS:
            self._advance()
        # A '.' is a radix point only when a digit follows; "1.x" stays member access.
        if (
            not self._eof
            and self._peek() == "."
            and self.index + 1 < len(text)
            and text[self.index + 1] in DIGITS
        ):
            self._advance()
            while not self._eof and self._peek() in DIGITS:
                self._advance()
        lexeme = text[start:self.index]
        return Token("NUMBER", lexeme, float(lexeme), line, col)

    def _consume_string(self) -> Token:
        line, col = self.line, self.column
        start = self.index
        opening = self._peek()
        self._advance()  # consume opening quote
        chars: List[str] = []
        while not self._eof:
            ch = self._peek()
            if ch == opening:
                self._advance()
                return Token("STRING", self.text[start:self.index], "".join(chars), line, col)
            if ch == "\n":
                raise LoopLexError("Unterminated string", line)
            if ch == "\\":
                self._advance()
                if self._eof or self._peek() == "\n":
                    raise LoopLexError("Unterminated string", line)
                escaped = self._peek()
                chars.append(ESCAPES.get(escaped, escaped))
                self._advance()
                continue
            chars.append(ch)
            self._advance()
        raise LoopLexError("Unterminated string", line)

    def _consume_identifier(self) -> Token:
        line, col = self.line, self.column
        start = self.index
        while not self._eof and self._peek() in IDENT_PART:
            self._advance()
        value = self.text[start:self.index]
        return Token(KEYWORDS.get(value, "IDENT"), value, None, line, col)

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1


def tokenize(source: str) -> List[Token]:
    return Lexer(source).tokenize()
