"""
Source text to Blocks.

Tokenizing is done by a koine grammar (tide_grammar.yaml); this module walks
the token stream and builds pipelines of expressions, declaring commands,
variables and modules into a StateWorkingSet as it goes.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from koine import Parser

from tide.tide_commands import Alias, CustomCommand, KnownExternal, Signature
from tide.tide_datatypes import (
    Assignment, BinaryOp, Block, BlockArg, Call, CallExpr, ClosureExpr, Expr,
    ExternalCall, ListExpr, Literal, ParseError, Pipeline, RangeExpr, RecordExpr,
    Span, Subexpression, UnaryOp, VarDecl, VarRef,
)
from tide.tide_state import (
    ENV_VARIABLE_ID, IN_VARIABLE_ID, IT_VARIABLE_ID, Module, StateWorkingSet,
)

GRAMMAR_PATH = Path(__file__).with_name("tide_grammar.yaml")

TOKEN_TAGS = {
    "newline", "dstring", "sstring", "number", "variable", "dotdot",
    "flag", "operator", "punct", "word",
}

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0", '"': '"', "\\": "\\", "'": "'"}

COMPARISON_OPS = {"==", "!=", "<", "<=", ">", ">=", "=~", "!~", "in", "not-in",
                  "starts-with", "ends-with"}
ADDITIVE_OPS = {"+", "-", "++"}
MULTIPLICATIVE_OPS = {"*", "/", "//", "mod"}

MAX_ALIAS_DEPTH = 32


@dataclass
class Token:
    kind: str
    text: str
    span: Span
    value: Any = None


class _Abort(Exception):
    """Stops the parse after the first error has been recorded."""


# ===================================================================
# 1. Tokenizing
# ===================================================================

class Tokenizer:
    _parser: Optional[Parser] = None

    @classmethod
    def _get_parser(cls) -> Parser:
        if cls._parser is None:
            with GRAMMAR_PATH.open("r", encoding="utf-8") as f:
                grammar = yaml.safe_load(f)
            cls._parser = Parser(grammar)
        return cls._parser

    def tokenize(self, text: str, base: int) -> Tuple[List[Token], Optional[ParseError]]:
        if not text.strip():
            return [], None
        try:
            result = self._get_parser().parse(text)
        except Exception as e:
            return [], ParseError(f"Could not tokenize source: {e}", Span(base, base + len(text)))

        ast = result
        if isinstance(result, dict) and "status" in result:
            if result["status"] != "success":
                return [], self._status_error(result, text, base)
            ast = result.get("ast")

        raw: List[dict] = []
        _collect_tokens(ast, raw)

        line_starts = [0] + [m.end() for m in re.finditer(r"\n", text)]
        tokens: List[Token] = []
        cursor = 0
        for node in raw:
            tok_text = node.get("text", "")
            if not isinstance(tok_text, str):
                tok_text = str(tok_text)
            offset = _node_offset(node, line_starts)
            if offset is None or text[offset:offset + len(tok_text)] != tok_text:
                offset = text.find(tok_text, cursor)
                if offset < 0:
                    offset = cursor
            cursor = offset + len(tok_text)
            tokens.append(_make_token(node["tag"], tok_text, Span(base + offset, base + cursor)))
        return tokens, None

    @staticmethod
    def _status_error(result: dict, text: str, base: int) -> ParseError:
        node = result.get("error_node") or {}
        line = node.get("line") or result.get("line")
        col = node.get("col") or result.get("col")
        msg = result.get("error_message") or result.get("message") or "Unrecognized input"
        offset = 0
        if line and col:
            line_starts = [0] + [m.end() for m in re.finditer(r"\n", text)]
            if 0 < line <= len(line_starts):
                offset = min(line_starts[line - 1] + col - 1, len(text))
        return ParseError(str(msg).splitlines()[0], Span(base + offset, base + offset + 1))


def _collect_tokens(node: Any, out: List[dict]) -> None:
    if isinstance(node, list):
        for child in node:
            _collect_tokens(child, out)
    elif isinstance(node, dict):
        if node.get("tag") in TOKEN_TAGS and "text" in node:
            out.append(node)
            return
        children = node.get("children")
        if isinstance(children, dict):
            for child in children.values():
                _collect_tokens(child, out)
        elif children is not None:
            _collect_tokens(children, out)


def _node_offset(node: dict, line_starts: List[int]) -> Optional[int]:
    line, col = node.get("line"), node.get("col")
    if not isinstance(line, int) or not isinstance(col, int):
        return None
    if not 0 < line <= len(line_starts):
        return None
    return line_starts[line - 1] + col - 1


def _make_token(tag: str, text: str, span: Span) -> Token:
    if tag == "dstring":
        body = re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), text[1:-1])
        return Token("string", text, span, body)
    if tag == "sstring":
        return Token("string", text, span, text[1:-1])
    if tag == "number":
        return Token("number", text, span, float(text) if "." in text else int(text))
    return Token(tag, text, span)


# ===================================================================
# 2. Parsing
# ===================================================================

def parse(working_set: StateWorkingSet, fname: Optional[str], source: Union[bytes, str],
          scoped: bool = False) -> Block:
    """Parse `source` into a Block registered in `working_set`.

    Errors are appended to `working_set.parse_errors`; on error the returned
    block is empty.
    """
    if isinstance(source, bytes):
        source = source.decode("utf-8", errors="replace")
    name = fname or "source"
    base = working_set.add_file(name, source)
    tokens, err = Tokenizer().tokenize(source, base)
    if err is not None:
        working_set.error(err)
        return Block(source_name=name)

    if scoped:
        working_set.enter_scope()
    try:
        p = _BlockParser(working_set, tokens, name)
        pipelines = p.parse_block_body(None, None)
        block = Block(tuple(pipelines), None, Span(base, base + len(source)), name)
    except _Abort:
        block = Block(source_name=name)
    finally:
        if scoped:
            working_set.exit_scope()
    working_set.add_block(block)
    return block


class _BlockParser:
    def __init__(self, working_set: StateWorkingSet, tokens: List[Token], fname: str):
        self.ws = working_set
        self.tokens = tokens
        self.pos = 0
        self.fname = fname
        self.alias_depth = 0
        self._predeclared: Dict[int, int] = {}

    # --- token helpers -----------------------------------------------

    def peek(self, k: int = 0) -> Optional[Token]:
        i = self.pos + k
        return self.tokens[i] if i < len(self.tokens) else None

    def next(self) -> Token:
        tok = self.peek()
        if tok is None:
            self.fail("Unexpected end of input", self._end_span())
        self.pos += 1
        return tok

    def _end_span(self) -> Span:
        if self.tokens:
            end = self.tokens[-1].span.end
            return Span(end, end + 1)
        return Span.unknown()

    def fail(self, msg: str, span: Optional[Span] = None, help: Optional[str] = None):
        self.ws.error(ParseError(msg, span or self._end_span(), help=help))
        raise _Abort()

    @staticmethod
    def is_punct(tok: Optional[Token], ch: str) -> bool:
        return tok is not None and tok.kind == "punct" and tok.text == ch

    @staticmethod
    def is_word(tok: Optional[Token], text: str) -> bool:
        return tok is not None and tok.kind == "word" and tok.text == text

    def expect_punct(self, ch: str, opener: Optional[Token] = None) -> Token:
        tok = self.peek()
        if not self.is_punct(tok, ch):
            if tok is None and opener is not None:
                self.fail(f"Unclosed delimiter `{opener.text}`", opener.span)
            self.fail(f"Expected `{ch}`", tok.span if tok else None)
        return self.next()

    def skip_newlines(self) -> None:
        while self.peek() is not None and self.peek().kind == "newline":
            self.pos += 1

    def skip_separators(self) -> None:
        while True:
            tok = self.peek()
            if tok is None:
                return
            if tok.kind == "newline" or self.is_punct(tok, ";"):
                self.pos += 1
                continue
            return

    def at_statement_end(self) -> bool:
        tok = self.peek()
        if tok is None or tok.kind == "newline":
            return True
        return tok.kind == "punct" and tok.text in ";|)}]"

    # --- blocks ------------------------------------------------------

    def parse_block_body(self, closing: Optional[str], opener: Optional[Token]) -> List[Pipeline]:
        self._predeclare()
        pipelines: List[Pipeline] = []
        while True:
            self.skip_separators()
            tok = self.peek()
            if tok is None:
                if closing is not None:
                    self.fail(f"Unclosed delimiter `{opener.text}`", opener.span)
                return pipelines
            if tok.kind == "punct" and tok.text in ")}]":
                if tok.text == closing:
                    return pipelines
                self.fail(f"Unexpected `{tok.text}`", tok.span)
            pipelines.append(self.parse_pipeline())

    def parse_pipeline(self) -> Pipeline:
        elements = [self.parse_element()]
        while self.is_punct(self.peek(), "|"):
            self.next()
            self.skip_newlines()
            elements.append(self.parse_element())
        if not self.at_statement_end():
            tok = self.peek()
            self.fail(f"Extra tokens in pipeline: `{tok.text}`", tok.span)
        return Pipeline(elements)

    def parse_nested_block(self, signature: Optional[Signature] = None,
                           params: Tuple[Tuple[str, Any], ...] = ()) -> Tuple[int, Span]:
        """Parse `{ ... }` in a new scope and register it; returns (block_id, span)."""
        opener = self.expect_punct("{")
        self.ws.enter_scope()
        try:
            for name, target in params:
                target.var_id = self.ws.add_variable(name, False, getattr(target, "type_name", "any"))
            if self._peek_closure_params():
                signature = self._parse_closure_params(signature)
            pipelines = self.parse_block_body("}", opener)
        finally:
            self.ws.exit_scope()
        closer = self.expect_punct("}", opener)
        span = opener.span.merge(closer.span)
        block = Block(tuple(pipelines), signature, span, self.fname)
        return self.ws.add_block(block), span

    def _peek_closure_params(self) -> bool:
        self.skip_newlines()
        return self.is_punct(self.peek(), "|")

    def _parse_closure_params(self, signature: Optional[Signature]) -> Signature:
        self.expect_punct("|")
        sig = signature or Signature("closure")
        while not self.is_punct(self.peek(), "|"):
            tok = self.next()
            if self.is_punct(tok, ","):
                continue
            if tok.kind != "word":
                self.fail("Expected a closure parameter name", tok.span)
            name = tok.text.lstrip("$")
            optional = name.endswith("?")
            name = name.rstrip("?")
            if optional:
                sig.optional(name)
                param = sig.optional_positional[-1]
            else:
                sig.required(name)
                param = sig.required_positional[-1]
            param.var_id = self.ws.add_variable(name, False, "any", tok.span)
        self.next()
        return sig

    # --- declarations that must be visible before their definition -----

    def _predeclare(self) -> None:
        depth = 0
        i = self.pos
        while i < len(self.tokens):
            tok = self.tokens[i]
            if tok.kind == "punct" and tok.text in "([{":
                depth += 1
            elif tok.kind == "punct" and tok.text in ")]}":
                if depth == 0:
                    return
                depth -= 1
            elif depth == 0 and tok.kind == "word" and tok.text in ("def", "def-env"):
                if i + 2 < len(self.tokens) and self.is_punct(self.tokens[i + 2], "["):
                    name_tok = self.tokens[i + 1]
                    if name_tok.kind in ("word", "string") and id(tok) not in self._predeclared:
                        saved = self.pos
                        self.pos = i + 2
                        sig = self.parse_signature(_token_name(name_tok))
                        self.pos = saved
                        decl = CustomCommand(sig.name, sig, env=tok.text == "def-env")
                        self._predeclared[id(tok)] = self.ws.add_decl(decl)
            i += 1

    # --- elements ----------------------------------------------------

    def parse_element(self) -> Expr:
        tok = self.peek()
        if tok is None or self.at_statement_end():
            self.fail("Expected a command or expression", tok.span if tok else None)

        if tok.kind == "word":
            keyword = KEYWORDS.get(tok.text)
            if keyword is not None and self._keyword_decl(tok) is not None:
                return keyword(self)
            if tok.text.startswith("^"):
                return self.parse_external()
            if tok.text in ("true", "false", "null", "not"):
                return self.parse_expression()
            nxt = self.peek(1)
            var_id = self.ws.find_variable(tok.text.split(".")[0])
            if var_id is not None and nxt is not None and nxt.kind == "operator" and nxt.text == "=":
                return self.parse_assignment()
            found = self.find_command()
            if var_id is not None and (found is None or (nxt is not None and nxt.kind == "operator")):
                return self.parse_expression()
            if found is not None:
                return self.parse_call(*found)
            return self.parse_external()

        if tok.kind == "variable":
            nxt = self.peek(1)
            if nxt is not None and nxt.kind == "operator" and nxt.text == "=":
                return self.parse_assignment()
            return self.parse_expression()

        if tok.kind in ("number", "string", "dotdot") or (tok.kind == "punct" and tok.text in "([{"):
            return self.parse_expression()

        self.fail(f"Unexpected `{tok.text}`", tok.span)

    def _keyword_decl(self, tok: Token) -> Optional[int]:
        name = tok.text
        if name == "export":
            nxt = self.peek(1)
            if nxt is None or nxt.kind != "word":
                return None
            name = f"export {nxt.text}"
        return self.ws.find_decl(name)

    def find_command(self) -> Optional[Tuple[int, int]]:
        """Longest run of words (up to three) naming a visible command."""
        words = []
        for k in range(3):
            tok = self.peek(k)
            if tok is None or tok.kind != "word":
                break
            words.append(tok.text)
        for n in range(len(words), 0, -1):
            decl_id = self.ws.find_decl(" ".join(words[:n]))
            if decl_id is not None:
                return decl_id, n
        return None

    def parse_assignment(self) -> Expr:
        tok = self.next()
        name = tok.text.lstrip("$")
        var_id = self.ws.find_variable(name)
        if var_id is None:
            self.fail(f"Variable not found: {name}", tok.span)
        if not self.ws.get_variable(var_id).mutable:
            self.fail(f"Cannot assign to immutable variable `{name}`", tok.span,
                      help="declare it with `mut` instead of `let`")
        self.next()  # '='
        rhs = self.parse_rhs_subexpression()
        return Assignment(var_id, name, rhs, tok.span.merge(rhs.span))

    def parse_rhs_subexpression(self) -> Expr:
        """The rest of the statement, as its own single-pipeline block."""
        if self.at_statement_end():
            tok = self.peek()
            self.fail("Expected a value after `=`", tok.span if tok else None)
        start = self.peek().span
        pipeline = self.parse_pipeline()
        end = self.tokens[self.pos - 1].span
        span = start.merge(end)
        block_id = self.ws.add_block(Block((pipeline,), None, span, self.fname))
        return Subexpression(block_id, span)

    # --- calls -------------------------------------------------------

    def parse_call(self, decl_id: int, name_len: int) -> Expr:
        first = self.peek()
        head = first.span.merge(self.peek(name_len - 1).span)
        self.pos += name_len
        decl = self.ws.get_decl(decl_id)

        if isinstance(decl, Alias):
            if self.alias_depth >= MAX_ALIAS_DEPTH:
                self.fail(f"Alias `{decl.name}` expands recursively", head)
            self.alias_depth += 1
            expansion = [Token(t.kind, t.text, head, t.value) for t in decl.tokens]
            self.tokens[self.pos:self.pos] = expansion
            try:
                return self.parse_element()
            finally:
                self.alias_depth -= 1

        sig = decl.signature()
        params = sig.all_positional()
        positional: List[Expr] = []
        named: Dict[str, Optional[Expr]] = {}
        span = head
        while not self.at_statement_end():
            tok = self.peek()
            flag = sig.find_flag(tok.text) if tok.kind == "flag" else None
            if tok.kind == "flag" and (flag is not None or not self._passes_flags(decl, sig, len(positional))):
                if flag is None:
                    self.fail(f"Unknown flag `{tok.text}` for `{decl.name}`", tok.span,
                              help=f"run `help {decl.name}`")
                self.next()
                if flag.shape is None:
                    named[flag.long] = None
                else:
                    if self.at_statement_end():
                        self.fail(f"Missing value for flag `--{flag.long}`", tok.span)
                    named[flag.long] = self.parse_arg(flag.shape)
                span = span.merge(self.tokens[self.pos - 1].span)
                continue
            idx = len(positional)
            if idx < len(params):
                shape = params[idx].shape
            elif sig.rest_positional is not None:
                shape = sig.rest_positional.shape
            elif isinstance(decl, KnownExternal):
                shape = "external"
            else:
                self.fail(f"Extra positional argument for `{decl.name}`", tok.span,
                          help=f"usage: {sig}")
            positional.append(self.parse_arg(shape))
            span = span.merge(self.tokens[self.pos - 1].span)

        if len(positional) < len(sig.required_positional):
            missing = sig.required_positional[len(positional)]
            self.fail(f"Missing required positional argument `{missing.name}` for `{decl.name}`", head,
                      help=f"usage: {sig}")
        return CallExpr(Call(decl_id, head, positional, named, span), span)

    @staticmethod
    def _passes_flags(decl, sig: Signature, idx: int) -> bool:
        """Unknown flags become plain arguments for external-style parameters."""
        if isinstance(decl, KnownExternal):
            return True
        params = sig.all_positional()
        if idx < len(params):
            return params[idx].shape == "external"
        return sig.rest_positional is not None and sig.rest_positional.shape == "external"

    def parse_arg(self, shape: str) -> Expr:
        tok = self.peek()
        if shape == "block":
            block_id, span = self.parse_nested_block()
            return BlockArg(block_id, span)
        if shape == "closure":
            if self.is_punct(tok, "{"):
                return self.parse_closure()
            return self.parse_value()
        if shape == "condition":
            if self.is_punct(tok, "{"):
                return self.parse_closure()
            return self.parse_expression(row_condition=True)
        if shape == "expression":
            return self.parse_expression(stop_at_brace=True)
        if shape == "else":
            return self._parse_keyword_branch("else")
        if shape == "catch":
            return self._parse_keyword_branch("catch")
        if shape == "external" and tok.kind in ("word", "flag", "operator", "dotdot", "number"):
            self.next()
            return Literal(tok.text, tok.span)
        return self.parse_value()

    def _parse_keyword_branch(self, keyword: str) -> Expr:
        tok = self.next()
        if not self.is_word(tok, keyword):
            self.fail(f"Expected `{keyword}`", tok.span)
        self.skip_newlines()
        if keyword == "else" and self.is_word(self.peek(), "if"):
            decl_id = self.ws.find_decl("if")
            return self.parse_call(decl_id, 1)
        if keyword == "else":
            block_id, span = self.parse_nested_block()
            return BlockArg(block_id, span)
        return self.parse_closure()

    def parse_closure(self) -> Expr:
        block_id, span = self.parse_nested_block(Signature("closure"))
        return ClosureExpr(block_id, span)

    def parse_external(self) -> Expr:
        head_tok = self.next()
        name = head_tok.text[1:] if head_tok.text.startswith("^") else head_tok.text
        if not name:
            self.fail("Expected an external command name after `^`", head_tok.span)
        span = head_tok.span
        args: List[Expr] = []
        while not self.at_statement_end():
            args.append(self.parse_arg("external"))
            span = span.merge(self.tokens[self.pos - 1].span)
        return ExternalCall(Literal(name, head_tok.span), args, span)

    # --- expressions -------------------------------------------------

    def parse_expression(self, stop_at_brace: bool = False, row_condition: bool = False) -> Expr:
        saved = (getattr(self, "_stop_at_brace", False), getattr(self, "_row_condition", False))
        self._stop_at_brace, self._row_condition = stop_at_brace, row_condition
        try:
            return self._parse_or()
        finally:
            self._stop_at_brace, self._row_condition = saved

    def _peek_op(self, ops) -> Optional[Token]:
        tok = self.peek()
        if tok is None or tok.kind not in ("operator", "word"):
            return None
        return tok if tok.text in ops else None

    def _binary(self, ops, operand) -> Expr:
        lhs = operand()
        while True:
            op = self._peek_op(ops)
            if op is None:
                return lhs
            self.next()
            self.skip_newlines()
            rhs = operand()
            lhs = BinaryOp(op.text, lhs, rhs, lhs.span.merge(rhs.span))

    def _parse_or(self) -> Expr:
        return self._binary({"or", "xor"}, self._parse_and)

    def _parse_and(self) -> Expr:
        return self._binary({"and"}, self._parse_not)

    def _parse_not(self) -> Expr:
        tok = self.peek()
        if self.is_word(tok, "not"):
            self.next()
            operand = self._parse_not()
            return UnaryOp("not", operand, tok.span.merge(operand.span))
        return self._parse_comparison()

    def _parse_comparison(self) -> Expr:
        lhs = self._parse_range()
        while True:
            op = self._peek_op(COMPARISON_OPS)
            if op is None:
                return lhs
            self.next()
            self.skip_newlines()
            # Only the left operand of a row condition names a column.
            saved, self._row_condition = getattr(self, "_row_condition", False), False
            try:
                rhs = self._parse_range()
            finally:
                self._row_condition = saved
            lhs = BinaryOp(op.text, lhs, rhs, lhs.span.merge(rhs.span))

    def _parse_range(self) -> Expr:
        lhs = self._parse_additive()
        if self.peek() is not None and self.peek().kind == "dotdot":
            self.next()
            rhs = self._parse_additive()
            return RangeExpr(lhs, rhs, lhs.span.merge(rhs.span))
        return lhs

    def _parse_additive(self) -> Expr:
        return self._binary(ADDITIVE_OPS, self._parse_multiplicative)

    def _parse_multiplicative(self) -> Expr:
        return self._binary(MULTIPLICATIVE_OPS, self._parse_power)

    def _parse_power(self) -> Expr:
        base = self._parse_primary(as_arg=False)
        op = self._peek_op({"**"})
        if op is None:
            return base
        self.next()
        exponent = self._parse_power()
        return BinaryOp("**", base, exponent, base.span.merge(exponent.span))

    def parse_value(self) -> Expr:
        """A single argument value; bare words are strings."""
        value = self._parse_primary(as_arg=True)
        if self.peek() is not None and self.peek().kind == "dotdot":
            self.next()
            end = self._parse_primary(as_arg=True)
            return RangeExpr(value, end, value.span.merge(end.span))
        return value

    def _parse_primary(self, as_arg: bool) -> Expr:
        tok = self.peek()
        if tok is None:
            self.fail("Expected an expression")
        if tok.kind in ("number", "string"):
            self.next()
            return Literal(tok.value, tok.span)
        if tok.kind == "variable":
            self.next()
            return self._variable_ref(tok.text[1:], tok)
        if tok.kind == "punct":
            if tok.text == "(":
                return self._parse_subexpression()
            if tok.text == "[":
                return self._parse_list()
            if tok.text == "{":
                if getattr(self, "_stop_at_brace", False) and not as_arg:
                    self.fail("Expected an expression before `{`", tok.span)
                return self._parse_brace_value()
            self.fail(f"Unexpected `{tok.text}`", tok.span)
        if tok.kind == "word":
            self.next()
            return self._word_value(tok, as_arg)
        if tok.kind in ("flag", "operator"):
            if as_arg:
                self.next()
                return Literal(tok.text, tok.span)
            self.fail(f"Unexpected `{tok.text}` in expression", tok.span)
        self.fail(f"Unexpected `{tok.text}`", tok.span)

    def _word_value(self, tok: Token, as_arg: bool) -> Expr:
        text = tok.text
        if text == "true":
            return Literal(True, tok.span)
        if text == "false":
            return Literal(False, tok.span)
        if text == "null":
            return Literal(None, tok.span)
        if as_arg:
            return Literal(text, tok.span)
        head, _, _ = text.partition(".")
        if self.ws.find_variable(head) is not None:
            return self._variable_ref(text, tok)
        if getattr(self, "_row_condition", False):
            path = tuple(_cell_member(m) for m in text.split("."))
            return VarRef(IT_VARIABLE_ID, "it", path, tok.span)
        return Literal(text, tok.span)

    def _variable_ref(self, text: str, tok: Token) -> Expr:
        name, *members = text.split(".")
        path = tuple(_cell_member(m) for m in members)
        if name == "env":
            return VarRef(ENV_VARIABLE_ID, name, path, tok.span)
        if name == "in":
            return VarRef(IN_VARIABLE_ID, name, path, tok.span)
        if name == "it":
            return VarRef(IT_VARIABLE_ID, name, path, tok.span)
        var_id = self.ws.find_variable(name)
        if var_id is None:
            self.fail(f"Variable not found: ${name}", tok.span)
        return VarRef(var_id, name, path, tok.span)

    def _parse_subexpression(self) -> Expr:
        opener = self.expect_punct("(")
        self.ws.enter_scope()
        try:
            pipelines = self.parse_block_body(")", opener)
        finally:
            self.ws.exit_scope()
        closer = self.expect_punct(")", opener)
        span = opener.span.merge(closer.span)
        block_id = self.ws.add_block(Block(tuple(pipelines), None, span, self.fname))
        return Subexpression(block_id, span)

    def _parse_list(self) -> Expr:
        opener = self.expect_punct("[")
        items: List[Expr] = []
        while True:
            self.skip_newlines()
            tok = self.peek()
            if tok is None:
                self.fail("Unclosed delimiter `[`", opener.span)
            if self.is_punct(tok, "]"):
                break
            if self.is_punct(tok, ","):
                self.next()
                continue
            items.append(self.parse_value())
        closer = self.next()
        return ListExpr(items, opener.span.merge(closer.span))

    def _parse_brace_value(self) -> Expr:
        """`{}` / `{k: v}` is a record, anything else is a closure."""
        opener = self.peek()
        i = 1
        while self.peek(i) is not None and self.peek(i).kind == "newline":
            i += 1
        first, second = self.peek(i), self.peek(i + 1)
        is_empty = self.is_punct(first, "}")
        is_record = (first is not None and first.kind in ("word", "string", "number")
                     and self.is_punct(second, ":"))
        if not (is_empty or is_record):
            return self.parse_closure()

        self.next()
        pairs: List[Tuple[str, Expr]] = []
        while True:
            self.skip_newlines()
            tok = self.peek()
            if tok is None:
                self.fail("Unclosed delimiter `{`", opener.span)
            if self.is_punct(tok, "}"):
                break
            if self.is_punct(tok, ","):
                self.next()
                continue
            key_tok = self.next()
            if key_tok.kind not in ("word", "string", "number"):
                self.fail("Expected a record key", key_tok.span)
            key = key_tok.value if key_tok.kind == "string" else key_tok.text
            self.expect_punct(":")
            self.skip_newlines()
            pairs.append((str(key), self.parse_expression()))
        closer = self.next()
        return RecordExpr(pairs, opener.span.merge(closer.span))

    # --- signatures --------------------------------------------------

    def parse_signature(self, name: str) -> Signature:
        opener = self.expect_punct("[")
        sig = Signature(name, category="custom")
        while True:
            self.skip_newlines()
            tok = self.peek()
            if tok is None:
                self.fail("Unclosed delimiter `[`", opener.span)
            if self.is_punct(tok, "]"):
                self.next()
                return sig
            if self.is_punct(tok, ","):
                self.next()
                continue
            if tok.kind == "flag":
                self._parse_flag_param(sig)
            elif tok.kind == "word":
                self._parse_positional_param(sig)
            else:
                self.fail("Expected a parameter", tok.span)

    def _param_type(self, raw_type: Optional[str]) -> Tuple[str, str]:
        type_name = raw_type or "any"
        shape = "closure" if type_name.startswith("closure") else "any"
        return shape, type_name

    def _parse_positional_param(self, sig: Signature) -> None:
        tok = self.next()
        text = tok.text
        raw_type = None
        if ":" in text:
            text, raw_type = text.split(":", 1)
        elif self.is_punct(self.peek(), ":"):
            self.next()
            raw_type = self.next().text
        rest = text.startswith("...")
        name = text[3:] if rest else text
        optional = name.endswith("?")
        name = name.rstrip("?")
        default = None
        if self._peek_op({"="}):
            self.next()
            default = self._literal_default()
            optional = True
        shape, type_name = self._param_type(raw_type)
        if rest:
            sig.rest(name, shape, type_name=type_name)
        elif optional:
            sig.optional(name, shape, default=default, type_name=type_name)
        else:
            if sig.optional_positional:
                self.fail(f"Required parameter `{name}` after an optional one", tok.span)
            sig.required(name, shape, type_name=type_name)

    def _parse_flag_param(self, sig: Signature) -> None:
        tok = self.next()
        if not tok.text.startswith("--"):
            self.fail("Flags must be declared with a long name (`--name`)", tok.span)
        long = tok.text[2:]
        short = None
        if self.is_punct(self.peek(), "("):
            self.next()
            short_tok = self.next()
            if short_tok.kind != "flag" or short_tok.text.startswith("--"):
                self.fail("Expected a short flag like `-f`", short_tok.span)
            short = short_tok.text[1:]
            self.expect_punct(")")
        if self.is_punct(self.peek(), ":"):
            self.next()
            shape, type_name = self._param_type(self.next().text)
            sig.named_flag(long, shape, short=short, type_name=type_name)
        else:
            sig.switch(long, short=short)

    def _literal_default(self) -> Any:
        tok = self.next()
        if tok.kind in ("number", "string"):
            return tok.value
        if tok.kind == "word":
            return {"true": True, "false": False, "null": None}.get(tok.text, tok.text)
        self.fail("Default values must be literals", tok.span)

    def _declare_params(self, sig: Signature) -> Tuple[Tuple[str, Any], ...]:
        params = [(p.name, p) for p in sig.all_positional()]
        if sig.rest_positional is not None:
            params.append((sig.rest_positional.name, sig.rest_positional))
        params.extend((f.long.replace("-", "_"), f) for f in sig.named)
        return tuple(params)

    # --- keyword statements ------------------------------------------

    def _keyword_call(self, name: str, head: Span, positional: List[Expr], span: Span) -> Expr:
        decl_id = self.ws.find_decl(name)
        return CallExpr(Call(decl_id, head, positional, {}, span), span)

    def parse_let(self) -> Expr:
        kw = self.next()
        name_tok = self.next()
        if name_tok.kind not in ("word", "variable"):
            self.fail(f"Expected a variable name after `{kw.text}`", name_tok.span)
        name = name_tok.text.lstrip("$")
        if not self._peek_op({"="}):
            tok = self.peek()
            self.fail("Expected `=` in variable declaration", tok.span if tok else name_tok.span)
        self.next()
        self.skip_newlines()
        rhs = self.parse_rhs_subexpression()
        var_id = self.ws.add_variable(name, kw.text == "mut", "any", name_tok.span)
        span = kw.span.merge(rhs.span)
        return self._keyword_call(kw.text, kw.span, [VarDecl(var_id, name, name_tok.span), rhs], span)

    def parse_let_env(self) -> Expr:
        kw = self.next()
        name_tok = self.next()
        if name_tok.kind not in ("word", "string"):
            self.fail("Expected an environment variable name", name_tok.span)
        if not self._peek_op({"="}):
            self.fail("Expected `=` after the environment variable name", name_tok.span)
        self.next()
        rhs = self.parse_rhs_subexpression()
        name = Literal(_token_name(name_tok), name_tok.span)
        return self._keyword_call(kw.text, kw.span, [name, rhs], kw.span.merge(rhs.span))

    def parse_def(self) -> Expr:
        start = self.pos
        kw = self.next()
        keyword = kw.text
        if keyword == "export":
            keyword = f"export {self.next().text}"
        def_tok = self.tokens[self.pos - 1]
        name_tok = self.next()
        if name_tok.kind not in ("word", "string"):
            self.fail(f"Expected a command name after `{keyword}`", name_tok.span)
        name = _token_name(name_tok)
        if not self.is_punct(self.peek(), "["):
            tok = self.peek()
            self.fail(f"Expected a signature `[...]` for `{name}`", tok.span if tok else name_tok.span)

        decl_id = self._predeclared.get(id(def_tok))
        if decl_id is None:
            sig = self.parse_signature(name)
            decl_id = self.ws.add_decl(CustomCommand(name, sig, env=keyword.endswith("def-env")))
        else:
            self.parse_signature(name)
        decl = self.ws.get_decl(decl_id)
        sig = decl.signature()

        if not self.is_punct(self.peek(), "{"):
            tok = self.peek()
            self.fail(f"Expected a block body for `{name}`", tok.span if tok else name_tok.span)
        block_id, body_span = self.parse_nested_block(sig, self._declare_params(sig))
        decl.block_id = block_id
        span = self.tokens[start].span.merge(body_span)
        return self._keyword_call(keyword, kw.span,
                                  [Literal(name, name_tok.span), BlockArg(block_id, body_span)], span)

    def parse_module(self) -> Expr:
        kw = self.next()
        if kw.text == "export":
            self.next()
        name_tok = self.next()
        if name_tok.kind not in ("word", "string"):
            self.fail("Expected a module name", name_tok.span)
        name = _token_name(name_tok)
        opener = self.expect_punct("{")
        self.ws.enter_scope()
        try:
            self.parse_block_body("}", opener)
            decls = self.ws.current_frame_decls()
        finally:
            self.ws.exit_scope()
        closer = self.expect_punct("}", opener)
        span = kw.span.merge(closer.span)
        self.ws.add_module(Module(name, tuple(decls.items()), span))
        return self._keyword_call("module", kw.span, [Literal(name, name_tok.span)], span)

    def parse_use(self) -> Expr:
        kw = self.next()
        name_tok = self.next()
        if name_tok.kind not in ("word", "string"):
            self.fail("Expected a module name after `use`", name_tok.span)
        name = _token_name(name_tok)
        module_id = self.ws.find_module(name)
        if module_id is None:
            self.fail(f"Module not found: {name}", name_tok.span)
        module = self.ws.get_module(module_id)
        members = module.decl_map()
        span = kw.span.merge(name_tok.span)
        if self.at_statement_end():
            self.ws.use_decls({f"{name} {k}": v for k, v in members.items()})
        else:
            tok = self.next()
            span = span.merge(tok.span)
            if tok.text == "*":
                self.ws.use_decls(members)
            else:
                member = _token_name(tok)
                if member not in members:
                    self.fail(f"Module `{name}` has no command `{member}`", tok.span)
                self.ws.use_decls({member: members[member]})
        return self._keyword_call("use", kw.span, [Literal(name, name_tok.span)], span)

    def parse_alias(self) -> Expr:
        kw = self.next()
        keyword = kw.text
        if keyword == "export":
            keyword = f"export {self.next().text}"
        name_tok = self.next()
        if name_tok.kind not in ("word", "string"):
            self.fail("Expected an alias name", name_tok.span)
        if not self._peek_op({"="}):
            self.fail("Expected `=` after the alias name", name_tok.span)
        eq = self.next()
        body: List[Token] = []
        while not self.at_statement_end() or (body and self.is_punct(self.peek(), "|")):
            body.append(self.next())
        if not body:
            self.fail("Alias body is empty", eq.span)
        name = _token_name(name_tok)
        self.ws.add_decl(Alias(name, tuple(body), usage=" ".join(t.text for t in body)))
        span = kw.span.merge(body[-1].span)
        return self._keyword_call(keyword, kw.span, [Literal(name, name_tok.span)], span)

    def parse_extern(self) -> Expr:
        kw = self.next()
        name_tok = self.next()
        name = _token_name(name_tok)
        sig = self.parse_signature(name)
        sig.category = "external"
        self.ws.add_decl(KnownExternal(name, sig))
        span = kw.span.merge(self.tokens[self.pos - 1].span)
        return self._keyword_call("extern", kw.span, [Literal(name, name_tok.span)], span)

    def parse_for(self) -> Expr:
        kw = self.next()
        name_tok = self.next()
        if name_tok.kind not in ("word", "variable"):
            self.fail("Expected a loop variable after `for`", name_tok.span)
        in_tok = self.next()
        if not self.is_word(in_tok, "in"):
            self.fail("Expected `in` after the loop variable", in_tok.span)
        items = self.parse_expression(stop_at_brace=True)
        self.ws.enter_scope()
        try:
            name = name_tok.text.lstrip("$")
            var_id = self.ws.add_variable(name, False, "any", name_tok.span)
            block_id, body_span = self.parse_nested_block()
        finally:
            self.ws.exit_scope()
        span = kw.span.merge(body_span)
        return self._keyword_call("for", kw.span,
                                  [VarDecl(var_id, name, name_tok.span), items, BlockArg(block_id, body_span)],
                                  span)

    def parse_source(self) -> Expr:
        kw = self.next()
        path_tok = self.next()
        if path_tok.kind not in ("word", "string"):
            self.fail("Expected a file path after `source`", path_tok.span)
        raw = _token_name(path_tok)
        path = Path(os.path.expanduser(raw))
        try:
            contents = path.read_text(encoding="utf-8")
        except OSError as e:
            self.fail(f"Could not read `{raw}`: {e.strerror or e}", path_tok.span)
        base = self.ws.add_file(str(path), contents)
        tokens, err = Tokenizer().tokenize(contents, base)
        if err is not None:
            self.ws.error(err)
            raise _Abort()
        sub = _BlockParser(self.ws, tokens, str(path))
        pipelines = sub.parse_block_body(None, None)
        file_span = Span(base, base + len(contents))
        block_id = self.ws.add_block(Block(tuple(pipelines), None, file_span, str(path)))
        span = kw.span.merge(path_tok.span)
        return self._keyword_call("source", kw.span,
                                  [Literal(raw, path_tok.span), BlockArg(block_id, file_span)], span)

    def parse_export(self) -> Expr:
        nxt = self.peek(1)
        if nxt.text in ("def", "def-env"):
            return self.parse_def()
        if nxt.text == "alias":
            return self.parse_alias()
        if nxt.text == "module":
            return self.parse_module()
        self.fail(f"Cannot export `{nxt.text}`", nxt.span)


def _token_name(tok: Token) -> str:
    return tok.value if tok.kind == "string" else tok.text


def _cell_member(text: str) -> Any:
    return int(text) if text.isdigit() else text


KEYWORDS = {
    "let": _BlockParser.parse_let,
    "mut": _BlockParser.parse_let,
    "const": _BlockParser.parse_let,
    "let-env": _BlockParser.parse_let_env,
    "def": _BlockParser.parse_def,
    "def-env": _BlockParser.parse_def,
    "export": _BlockParser.parse_export,
    "module": _BlockParser.parse_module,
    "use": _BlockParser.parse_use,
    "alias": _BlockParser.parse_alias,
    "extern": _BlockParser.parse_extern,
    "for": _BlockParser.parse_for,
    "source": _BlockParser.parse_source,
}
