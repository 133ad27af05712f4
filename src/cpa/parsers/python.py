# Copyright 2026 Zsolt Kulcsar and Contributors. Licensed under the EUPL-1.2 or later
"""Python source parser implementation."""

import ast
import logging
from dataclasses import dataclass
from typing import Any

from cpa.parser import NodeKind, ParsedNode, ParseError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _NodeContext:
    scope: str


class PythonParser:
    """Parse Python sources into a tree of module, class and function nodes."""

    def parse(self, source: str, artifact_path: str) -> dict[str, Any]:
        """Parse Python source.

        Args:
            source: Python source text.
            artifact_path: Path used in error messages.

        Returns:
            Module node with nested class, function and method nodes.

        Raises:
            ParseError: If the source is not valid Python.
        """
        try:
            tree = ast.parse(source, filename=artifact_path)
        except (SyntaxError, ValueError) as exc:
            raise ParseError(f"Cannot parse {artifact_path}: {exc}") from exc

        line_count = len(source.splitlines())
        module: ParsedNode = {
            "kind": "module",
            "name": artifact_path,
            "params": [],
            "start_line": 1,
            "end_line": max(1, line_count),
            "doc": ast.get_docstring(tree),
            "children": self._extract_nodes(tree.body),
        }
        return dict(module)

    def _extract_nodes(
        self, body: list[ast.stmt], context: _NodeContext | None = None
    ) -> list[ParsedNode]:
        context = context or _NodeContext(scope="module")
        nodes: list[ParsedNode] = []
        for node in body:
            if isinstance(node, ast.ClassDef):
                nodes.append(
                    self._create_node(
                        kind="class",
                        node=node,
                        params=[ast.unparse(base) for base in node.bases],
                        children=self._extract_nodes(node.body, _NodeContext(scope="class")),
                    )
                )
            elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                kind: NodeKind = "method" if context.scope == "class" else "function"
                nodes.append(
                    self._create_node(
                        kind=kind,
                        node=node,
                        params=_parameter_names(node.args),
                        children=self._extract_nodes(node.body, _NodeContext(scope="function")),
                    )
                )
        return nodes

    def _create_node(
        self,
        kind: NodeKind,
        node: ast.ClassDef | ast.FunctionDef | ast.AsyncFunctionDef,
        params: list[str],
        children: list[ParsedNode],
    ) -> ParsedNode:
        start_line = int(node.lineno)
        return {
            "kind": kind,
            "name": node.name,
            "params": params,
            "start_line": start_line,
            "end_line": int(getattr(node, "end_lineno", None) or start_line),
            "doc": ast.get_docstring(node),
            "children": children,
        }


def _parameter_names(args: ast.arguments) -> list[str]:
    names = [arg.arg for arg in [*args.posonlyargs, *args.args]]
    if args.vararg is not None:
        names.append(f"*{args.vararg.arg}")
    names.extend(arg.arg for arg in args.kwonlyargs)
    if args.kwarg is not None:
        names.append(f"**{args.kwarg.arg}")
    return names
