"""
Query derivation for docrepo.

- parser: method names to predicate trees
- statement: predicate trees to declarative statements
- template: inline @query statements
- plan: per-method QueryPlans and execution-path selection
"""

from .parser import Operator, PartTree, Predicate, Sort, Subject, parse_method_name
from .plan import ExecutionMode, QueryPlan, ResultShape, ViewBinding, derive_plan
from .statement import Statement, StatementBuilder
from .template import CompiledTemplate, compile_template

__all__ = [
    "Operator",
    "PartTree",
    "Predicate",
    "Sort",
    "Subject",
    "parse_method_name",
    "ExecutionMode",
    "QueryPlan",
    "ResultShape",
    "ViewBinding",
    "derive_plan",
    "Statement",
    "StatementBuilder",
    "CompiledTemplate",
    "compile_template",
]
