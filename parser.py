from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from lexer import LoopParseError, Token, tokenize


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class Node:
    location: SourceLocation

    @property
    def line(self) -> int:
        return self.location.line


@dataclass
class Program(Node):
    statements: List["Statement"]


class Statement(Node):
    pass


class Expression(Node):
    pass


@dataclass
class ExpressionStatement(Statement):
    expression: Expression


@dataclass
class Assignment(Statement):
    target: Expression
    operator: str
    expression: Expression


@dataclass
class IfStatement(Statement):
    condition: Expression
    body: List[Statement]
    else_body: Optional[List[Statement]] = None


@dataclass
class WhileStatement(Statement):
    condition: Expression
    body: List[Statement]


@dataclass
class ForStatement(Statement):
    variable: str
    iterable: Expression
    body: List[Statement]


@dataclass
class FuncDef(Statement):
    name: str
    params: List[str]
    body: List[Statement]


@dataclass
class ClassDef(Statement):
    name: str
    methods: List[FuncDef]


@dataclass
class ReturnStatement(Statement):
    expression: Optional[Expression]


@dataclass
class BreakStatement(Statement):
    pass


@dataclass
class ContinueStatement(Statement):
    pass


@dataclass
class PassStatement(Statement):
    pass


@dataclass
class GlobalStatement(Statement):
    names: List[str]


@dataclass
class ImportStatement(Statement):
    name: str
    member: Optional[str] = None


@dataclass
class Literal(Expression):
    value: Any


@dataclass
class Identifier(Expression):
    name: str


@dataclass
class BinaryOp(Expression):
    operator: str
    left: Expression
    right: Expression


@dataclass
class UnaryOp(Expression):
    operator: str
    operand: Expression


@dataclass
class CallArgument:
    name: Optional[str]
    expression: Expression


@dataclass
class CallExpression(Expression):
    callee: Expression
    args: List[CallArgument]


@dataclass
class IndexExpression(Expression):
    base: Expression
    index: Expression


@dataclass
class SliceExpression(Expression):
    base: Expression
    start: Optional[Expression]
    stop: Optional[Expression]
    step: Optional[Expression]


@dataclass
class ListLiteral(Expression):
    items: List[Expression]


@dataclass
class TupleLiteral(Expression):
    items: List[Expression]


@dataclass
class DictLiteral(Expression):
    entries: List[Tuple[Expression, Expression]] = field(default_factory=list)


@dataclass
class LambdaExpression(Expression):
    params: List[str]
    body: Expression


@dataclass
class ListComprehension(Expression):
    element: Expression
    variable: str
    iterable: Expression
    condition: Optional[Expression]


@dataclass
class MemberExpression(Expression):
    base: Expression
    name: str


ASSIGNMENT_OPERATORS = {"EQUAL", "PLUS_EQUAL", "MINUS_EQUAL", "STAR_EQUAL", "SLASH_EQUAL"}

COMPARISON_OPERATORS = {
    "EQUAL_EQUAL",
    "BANG_EQUAL",
    "LESS",
    "GREATER",
    "LESS_EQUAL",
    "GREATER_EQUAL",
    "IN",
    "IS",
}

# Left-associative binary levels between comparison and exponentiation, loosest first.
BINARY_LEVELS = [
    {"PIPE"},
    {"CARET"},
    {"AMPERSAND"},
    {"LEFT_SHIFT", "RIGHT_SHIFT"},
    {"PLUS", "MINUS"},
    {"STAR", "SLASH", "PERCENT"},
]


class Parser:
    def __init__(self, tokens: List[Token], filename: str = "<string>", source_lines: Optional[List[str]] = None):
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines or []
        self.index = 0

    def parse(self) -> Program:
        statements: List[Statement] = []
        while self._peek().type != "EOF":
            if self._match("NEWLINE"):
                continue
            statements.append(self._parse_statement())
        eof_token: Token = self._peek()
        return Program(location=self._location_from_token(eof_token), statements=statements)

    # Statements

    def _parse_statement(self) -> Statement:
        token_type = self._peek().type
        if token_type == "IF":
            return self._parse_if()
        if token_type == "WHILE":
            return self._parse_while()
        if token_type == "FOR":
            return self._parse_for()
        if token_type == "DEF":
            return self._parse_func()
        if token_type == "CLASS":
            return self._parse_class()
        return self._parse_simple_statement()

    def _parse_simple_statement(self) -> Statement:
        token = self._peek()
        location = self._location_from_token(token)
        statement: Statement
        if self._match("RETURN"):
            expression: Optional[Expression] = None
            if self._peek().type not in ("NEWLINE", "DEDENT", "EOF"):
                expression = self._parse_expression()
            statement = ReturnStatement(location=location, expression=expression)
        elif self._match("BREAK"):
            statement = BreakStatement(location=location)
        elif self._match("CONTINUE"):
            statement = ContinueStatement(location=location)
        elif self._match("PASS"):
            statement = PassStatement(location=location)
        elif self._match("GLOBAL"):
            names = [self._consume("IDENT", "Expected variable name after 'global'").lexeme]
            while self._match("COMMA"):
                names.append(self._consume("IDENT", "Expected variable name after ','").lexeme)
            statement = GlobalStatement(location=location, names=names)
        elif self._match("IMPORT"):
            name = self._consume("IDENT", "Expected enum name after 'import'").lexeme
            member: Optional[str] = None
            if self._match("DOT"):
                member = self._consume("IDENT", "Expected member name after '.'").lexeme
            statement = ImportStatement(location=location, name=name, member=member)
        else:
            statement = self._parse_assignment_or_expression()
        self._consume_statement_end()
        return statement

    def _parse_assignment_or_expression(self) -> Statement:
        location = self._location_from_token(self._peek())
        expr = self._parse_expression()
        if self._peek().type in ASSIGNMENT_OPERATORS:
            op_token = self._advance()
            if not isinstance(expr, (Identifier, MemberExpression, IndexExpression)):
                raise LoopParseError("Invalid assignment target", op_token.line)
            value = self._parse_expression()
            return Assignment(location=location, target=expr, operator=op_token.lexeme, expression=value)
        return ExpressionStatement(location=location, expression=expr)

    def _parse_if(self) -> IfStatement:
        keyword = self._consume("IF", "Expected 'if'")
        condition = self._parse_expression()
        self._consume("COLON", "Expected ':' after if condition")
        body = self._parse_suite()
        statement = IfStatement(location=self._location_from_token(keyword), condition=condition, body=body)
        # elif chains nest into else_body; a trailing else lands on the deepest one.
        deepest = statement
        while self._peek().type == "ELIF":
            elif_token = self._advance()
            elif_condition = self._parse_expression()
            self._consume("COLON", "Expected ':' after elif condition")
            elif_body = self._parse_suite()
            nested = IfStatement(
                location=self._location_from_token(elif_token),
                condition=elif_condition,
                body=elif_body,
            )
            deepest.else_body = [nested]
            deepest = nested
        if self._match("ELSE"):
            self._consume("COLON", "Expected ':' after else")
            deepest.else_body = self._parse_suite()
        return statement

    def _parse_while(self) -> WhileStatement:
        keyword = self._consume("WHILE", "Expected 'while'")
        condition = self._parse_expression()
        self._consume("COLON", "Expected ':' after while condition")
        body = self._parse_suite()
        return WhileStatement(location=self._location_from_token(keyword), condition=condition, body=body)

    def _parse_for(self) -> ForStatement:
        keyword = self._consume("FOR", "Expected 'for'")
        variable = self._consume("IDENT", "Expected variable name in for loop")
        self._consume("IN", "Expected 'in' in for loop")
        iterable = self._parse_expression()
        self._consume("COLON", "Expected ':' after for clause")
        body = self._parse_suite()
        return ForStatement(
            location=self._location_from_token(keyword),
            variable=variable.lexeme,
            iterable=iterable,
            body=body,
        )

    def _parse_func(self) -> FuncDef:
        keyword = self._consume("DEF", "Expected 'def'")
        name = self._consume("IDENT", "Expected function name")
        self._consume("LPAREN", "Expected '(' after function name")
        params: List[str] = []
        if self._peek().type != "RPAREN":
            while True:
                param = self._consume("IDENT", "Expected parameter name")
                if param.lexeme in params:
                    raise LoopParseError(f"Duplicate parameter '{param.lexeme}'", param.line)
                params.append(param.lexeme)
                if not self._match("COMMA") or self._peek().type == "RPAREN":
                    break
        self._consume("RPAREN", "Expected ')' after parameters")
        self._consume("COLON", "Expected ':' after function signature")
        body = self._parse_suite()
        return FuncDef(location=self._location_from_token(keyword), name=name.lexeme, params=params, body=body)

    def _parse_class(self) -> ClassDef:
        keyword = self._consume("CLASS", "Expected 'class'")
        name = self._consume("IDENT", "Expected class name")
        self._consume("COLON", "Expected ':' after class name")
        location = self._location_from_token(keyword)
        if self._peek().type != "NEWLINE":
            self._consume("PASS", "Only method definitions allowed in class body")
            self._consume_statement_end()
            return ClassDef(location=location, name=name.lexeme, methods=[])
        self._consume("NEWLINE", "Expected newline after ':'")
        self._consume("INDENT", "Expected indented block after class definition")
        methods: List[FuncDef] = []
        while self._peek().type not in ("DEDENT", "EOF"):
            if self._match("NEWLINE"):
                continue
            if self._peek().type == "DEF":
                methods.append(self._parse_func())
                continue
            if self._match("PASS"):
                self._consume_statement_end()
                continue
            raise LoopParseError("Only method definitions allowed in class body", self._peek().line)
        self._consume("DEDENT", "Expected dedent after class body")
        return ClassDef(location=location, name=name.lexeme, methods=methods)

    def _parse_suite(self) -> List[Statement]:
        if self._peek().type != "NEWLINE":
            return [self._parse_simple_statement()]
        self._consume("NEWLINE", "Expected newline")
        self._consume("INDENT", "Expected indented block")
        statements: List[Statement] = []
        while self._peek().type not in ("DEDENT", "EOF"):
            if self._match("NEWLINE"):
                continue
            statements.append(self._parse_statement())
        self._consume("DEDENT", "Expected dedent")
        return statements

    def _consume_statement_end(self) -> None:
        token_type = self._peek().type
        if token_type in ("DEDENT", "EOF"):
            return
        if token_type != "NEWLINE":
            raise LoopParseError(f"Expected newline after statement but found '{self._peek().lexeme}'", self._peek().line)
        while self._match("NEWLINE"):
            continue

    # Expressions, loosest to tightest

    def _parse_expression(self) -> Expression:
        if self._peek().type == "LAMBDA":
            keyword = self._advance()
            params: List[str] = []
            if self._peek().type != "COLON":
                while True:
                    params.append(self._consume("IDENT", "Expected parameter name").lexeme)
                    if not self._match("COMMA"):
                        break
            self._consume("COLON", "Expected ':' after lambda parameters")
            # Parsed at the 'or' level so the body cannot recurse back into lambda.
            body = self._parse_or()
            return LambdaExpression(location=self._location_from_token(keyword), params=params, body=body)
        return self._parse_or()

    def _parse_or(self) -> Expression:
        expr = self._parse_and()
        while self._peek().type == "OR":
            op = self._advance()
            expr = BinaryOp(location=self._location_from_token(op), operator="or", left=expr, right=self._parse_and())
        return expr

    def _parse_and(self) -> Expression:
        expr = self._parse_not()
        while self._peek().type == "AND":
            op = self._advance()
            expr = BinaryOp(location=self._location_from_token(op), operator="and", left=expr, right=self._parse_not())
        return expr

    def _parse_not(self) -> Expression:
        if self._peek().type == "NOT":
            op = self._advance()
            return UnaryOp(location=self._location_from_token(op), operator="not", operand=self._parse_not())
        return self._parse_comparison()

    def _parse_comparison(self) -> Expression:
        expr = self._parse_binary(0)
        while self._peek().type in COMPARISON_OPERATORS:
            op = self._advance()
            right = self._parse_binary(0)
            expr = BinaryOp(location=self._location_from_token(op), operator=op.lexeme, left=expr, right=right)
        return expr

    def _parse_binary(self, level: int) -> Expression:
        if level == len(BINARY_LEVELS):
            return self._parse_power()
        operators = BINARY_LEVELS[level]
        expr = self._parse_binary(level + 1)
        while self._peek().type in operators:
            op = self._advance()
            right = self._parse_binary(level + 1)
            expr = BinaryOp(location=self._location_from_token(op), operator=op.lexeme, left=expr, right=right)
        return expr

    def _parse_power(self) -> Expression:
        expr = self._parse_unary()
        if self._peek().type == "DOUBLE_STAR":
            op = self._advance()
            # Right-associative: 2 ** 3 ** 2 == 2 ** (3 ** 2)
            right = self._parse_power()
            return BinaryOp(location=self._location_from_token(op), operator="**", left=expr, right=right)
        return expr

    def _parse_unary(self) -> Expression:
        if self._peek().type in ("MINUS", "PLUS", "TILDE", "NOT"):
            op = self._advance()
            return UnaryOp(location=self._location_from_token(op), operator=op.lexeme, operand=self._parse_unary())
        return self._parse_postfix()

    def _parse_postfix(self) -> Expression:
        expr = self._parse_atom()
        while True:
            token = self._peek()
            if token.type == "LPAREN":
                self._advance()
                expr = CallExpression(location=self._location_from_token(token), callee=expr, args=self._parse_call_arguments())
            elif token.type == "LBRACKET":
                self._advance()
                expr = self._parse_subscript(expr, token)
            elif token.type == "DOT":
                self._advance()
                member = self._consume("IDENT", "Expected member name after '.'")
                expr = MemberExpression(location=self._location_from_token(token), base=expr, name=member.lexeme)
            else:
                return expr

    def _parse_call_arguments(self) -> List[CallArgument]:
        args: List[CallArgument] = []
        seen_keywords: List[str] = []
        while self._peek().type != "RPAREN":
            if self._peek().type == "IDENT" and self._peek_next().type == "EQUAL":
                name_tok = self._advance()
                self._advance()
                if name_tok.lexeme in seen_keywords:
                    raise LoopParseError(f"Duplicate keyword argument '{name_tok.lexeme}'", name_tok.line)
                seen_keywords.append(name_tok.lexeme)
                args.append(CallArgument(name=name_tok.lexeme, expression=self._parse_expression()))
            else:
                if seen_keywords:
                    raise LoopParseError("Positional argument cannot follow keyword argument", self._peek().line)
                args.append(CallArgument(name=None, expression=self._parse_expression()))
            if not self._match("COMMA"):
                break
        self._consume("RPAREN", "Expected ')' after arguments")
        return args

    def _parse_subscript(self, base: Expression, bracket: Token) -> Expression:
        location = self._location_from_token(bracket)
        start: Optional[Expression] = None
        if self._peek().type != "COLON":
            start = self._parse_expression()
        if not self._match("COLON"):
            self._consume("RBRACKET", "Expected ']'")
            if start is None:
                raise LoopParseError("Expected index expression", bracket.line)
            return IndexExpression(location=location, base=base, index=start)
        stop: Optional[Expression] = None
        step: Optional[Expression] = None
        if self._peek().type not in ("COLON", "RBRACKET"):
            stop = self._parse_expression()
        if self._match("COLON") and self._peek().type != "RBRACKET":
            step = self._parse_expression()
        self._consume("RBRACKET", "Expected ']'")
        return SliceExpression(location=location, base=base, start=start, stop=stop, step=step)

    def _parse_atom(self) -> Expression:
        token = self._peek()
        location = self._location_from_token(token)
        if self._match("TRUE"):
            return Literal(location=location, value=True)
        if self._match("FALSE"):
            return Literal(location=location, value=False)
        if self._match("NONE"):
            return Literal(location=location, value=None)
        if token.type in ("NUMBER", "STRING"):
            self._advance()
            return Literal(location=location, value=token.literal)
        if self._match("IDENT"):
            return Identifier(location=location, name=token.lexeme)
        if self._match("LPAREN"):
            return self._parse_parenthesized(location)
        if self._match("LBRACKET"):
            return self._parse_list(location)
        if self._match("LBRACE"):
            return self._parse_dict(location)
        if token.type == "EOF":
            raise LoopParseError("Unexpected end of input", token.line)
        raise LoopParseError(f"Unexpected token: '{token.lexeme or token.type}'", token.line)

    def _parse_parenthesized(self, location: SourceLocation) -> Expression:
        if self._match("RPAREN"):
            return TupleLiteral(location=location, items=[])
        first = self._parse_expression()
        if not self._match("COMMA"):
            self._consume("RPAREN", "Expected ')'")
            return first
        items = [first]
        while self._peek().type != "RPAREN":
            items.append(self._parse_expression())
            if not self._match("COMMA"):
                break
        self._consume("RPAREN", "Expected ')' after tuple")
        return TupleLiteral(location=location, items=items)

    def _parse_list(self, location: SourceLocation) -> Expression:
        if self._match("RBRACKET"):
            return ListLiteral(location=location, items=[])
        first = self._parse_expression()
        if self._match("FOR"):
            variable = self._consume("IDENT", "Expected variable in list comprehension")
            self._consume("IN", "Expected 'in' in list comprehension")
            iterable = self._parse_expression()
            condition: Optional[Expression] = None
            if self._match("IF"):
                condition = self._parse_expression()
            self._consume("RBRACKET", "Expected ']' after list comprehension")
            return ListComprehension(
                location=location,
                element=first,
                variable=variable.lexeme,
                iterable=iterable,
                condition=condition,
            )
        items = [first]
        while self._match("COMMA"):
            if self._peek().type == "RBRACKET":
                break
            items.append(self._parse_expression())
        self._consume("RBRACKET", "Expected ']'")
        return ListLiteral(location=location, items=items)

    def _parse_dict(self, location: SourceLocation) -> Expression:
        entries: List[Tuple[Expression, Expression]] = []
        while self._peek().type != "RBRACE":
            key = self._parse_expression()
            self._consume("COLON", "Expected ':' in dictionary literal")
            entries.append((key, self._parse_expression()))
            if not self._match("COMMA"):
                break
        self._consume("RBRACE", "Expected '}'")
        return DictLiteral(location=location, entries=entries)

    # Token helpers

    def _consume(self, token_type: str, message: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise LoopParseError(message, token.line)
        self.index += 1
        return token

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _advance(self) -> Token:
        token = self._peek()
        if token.type != "EOF":
            self.index += 1
        return token

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _peek_next(self) -> Token:
        if self.index + 1 >= len(self.tokens):
            return self.tokens[-1]
        return self.tokens[self.index + 1]

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(self.source_lines):
            statement = self.source_lines[line_index].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)


def parse(tokens: List[Token], filename: str = "<string>", source_lines: Optional[List[str]] = None) -> Program:
    return Parser(tokens, filename, source_lines).parse()


def parse_source(text: str, filename: str = "<string>") -> Program:
    return parse(tokenize(text), filename, text.splitlines())
