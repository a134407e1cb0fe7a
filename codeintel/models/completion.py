"""
Models for the completion surface: symbols, completion context, ranked output.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from codeintel.models.requests import utc_now


class SymbolKind(str, Enum):
    VARIABLE = "variable"
    FUNCTION = "function"
    CLASS = "class"
    INTERFACE = "interface"
    ENUM = "enum"
    MODULE = "module"
    PROPERTY = "property"
    METHOD = "method"
    CONSTRUCTOR = "constructor"
    CONSTANT = "constant"
    TYPE = "type"


class CompletionKind(str, Enum):
    MEMBER_ACCESS = "member_access"
    FUNCTION_CALL = "function_call"
    VARIABLE_DECLARATION = "variable_declaration"
    IMPORT_STATEMENT = "import_statement"
    TYPE_ANNOTATION = "type_annotation"
    KEYWORD = "keyword"
    GENERIC_EXPRESSION = "generic_expression"


class FactorKind(str, Enum):
    CONTEXT_MATCH = "context_match"
    USAGE_FREQUENCY = "usage_frequency"
    RECENCY = "recency"
    TYPE_COMPATIBILITY = "type_compatibility"
    SCOPE_PROXIMITY = "scope_proximity"
    PATTERN_MATCH = "pattern_match"
    USER_PREFERENCE = "user_preference"
    SEMANTIC_SIMILARITY = "semantic_similarity"


class Position(BaseModel):
    """Zero-based line and character offset."""

    line: int = Field(0, ge=0)
    character: int = Field(0, ge=0)


class SymbolInfo(BaseModel):
    name: str
    type: str = "unknown"
    kind: SymbolKind
    scope: str = "global"  # local | imported | global | builtin
    documentation: Optional[str] = None
    signature: Optional[str] = None
    is_deprecated: bool = False
    confidence: float = Field(1.0, ge=0.0, le=1.0)


class UsagePattern(BaseModel):
    symbol: str
    frequency: int = 0
    last_used: datetime = Field(default_factory=utc_now)
    context: str = ""


class SyntaxContext(BaseModel):
    in_string: bool = False
    in_comment: bool = False
    in_function: bool = False
    in_class: bool = False
    in_block: bool = False
    preceding_token: Optional[str] = None
    following_token: Optional[str] = None
    indentation_level: int = 0


class ImportInfo(BaseModel):
    module: str
    imports: List[str] = Field(default_factory=list)
    is_default: bool = False


class SemanticContext(BaseModel):
    expected_return_type: Optional[str] = None
    available_types: List[str] = Field(default_factory=list)
    imported_modules: List[ImportInfo] = Field(default_factory=list)


class FunctionInfo(BaseModel):
    name: str
    line: int


class VariableInfo(BaseModel):
    name: str
    line: int
    type: str = "unknown"


class CompletionContext(BaseModel):
    current_file: str
    cursor_position: Position
    surrounding_code: str = ""
    imports: List[str] = Field(default_factory=list)
    functions: List[FunctionInfo] = Field(default_factory=list)
    variables: List[VariableInfo] = Field(default_factory=list)
    scope: List[str] = Field(default_factory=lambda: ["global"])
    completion_type: CompletionKind = CompletionKind.GENERIC_EXPRESSION
    expected_type: Optional[str] = None
    available_symbols: List[SymbolInfo] = Field(default_factory=list)
    recent_usage: List[UsagePattern] = Field(default_factory=list)
    syntax_context: SyntaxContext = Field(default_factory=SyntaxContext)
    semantic_context: SemanticContext = Field(default_factory=SemanticContext)


class RelevanceFactor(BaseModel):
    type: FactorKind
    weight: float
    score: float
    description: str


class RankedCompletion(BaseModel):
    symbol: SymbolInfo
    score: float
    confidence: float
    relevance_factors: List[RelevanceFactor] = Field(default_factory=list)
    insert_text: str
    display_text: str
    documentation: Optional[str] = None
    sort_text: str
    filter_text: str


class CompletionItem(BaseModel):
    """Merged suggestion returned by the completion service."""

    label: str
    insert_text: str
    kind: str
    detail: Optional[str] = None
    documentation: Optional[str] = None
    sort_text: str
    filter_text: str
    source: str  # local | ai
    confidence: float
    relevance_factors: List[str] = Field(default_factory=list)
    model_used: Optional[str] = None
    processing_time: float = 0.0
