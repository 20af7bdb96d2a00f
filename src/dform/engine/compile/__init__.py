"""Project compiler.

Loads definition files, evaluates their templates, synthesizes assertions and
validates the resulting dependency graph.

This package re-exports its public symbols:
    from dform.engine.compile import compile_project, CompiledGraph, Target, ...
"""

from __future__ import annotations

# Data models
from .models import (
    HERMETIC,
    NON_HERMETIC,
    Action,
    Assertion,
    AssertionSpec,
    CompiledGraph,
    Declaration,
    FileError,
    Operation,
    Table,
    Target,
    action_type,
)

# Targets and name lookup
from .targets import (
    AmbiguousReferenceError,
    NameTable,
    canonical_target_for,
    runtime_target_for,
)

# Discovery
from .discovery import (
    Definition,
    DefinitionError,
    discover_definitions,
    load_definition,
    parse_action_config,
)

# Templates
from .templating import (
    TemplateContext,
    TemplateError,
    build_name_table,
    compile_definition,
    compile_template,
)

# Assertions and graph
from .assertions import synthesize_assertions
from .graph import build_graph, dependencies_of, topological_order

# Orchestration
from .orchestration import (
    CompilationCancelled,
    compile_definitions,
    compile_project,
)

# Serialization
from .serialization import compiled_graph_to_dict, target_to_dict

__all__ = [
    # Models
    "HERMETIC",
    "NON_HERMETIC",
    "Action",
    "Assertion",
    "AssertionSpec",
    "CompiledGraph",
    "Declaration",
    "FileError",
    "Operation",
    "Table",
    "Target",
    "action_type",
    # Targets
    "AmbiguousReferenceError",
    "NameTable",
    "canonical_target_for",
    "runtime_target_for",
    # Discovery
    "Definition",
    "DefinitionError",
    "discover_definitions",
    "load_definition",
    "parse_action_config",
    # Templates
    "TemplateContext",
    "TemplateError",
    "build_name_table",
    "compile_definition",
    "compile_template",
    # Graph
    "build_graph",
    "dependencies_of",
    "synthesize_assertions",
    "topological_order",
    # Orchestration
    "CompilationCancelled",
    "compile_definitions",
    "compile_project",
    # Serialization
    "compiled_graph_to_dict",
    "target_to_dict",
]
