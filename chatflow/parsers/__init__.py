"""Parsers for converting builder formats to flow graphs."""

from chatflow.parsers.react_flow import ReactFlowParser, ReactFlowJSON, parse_react_flow

__all__ = [
    "ReactFlowParser",
    "ReactFlowJSON",
    "parse_react_flow",
]
