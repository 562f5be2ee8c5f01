# Core subpackage: query-construction building blocks. Reflection lives in
# core.reflection and is not re-exported here (it depends on the adapters).
from .types import SemanticType, ColumnTypeMap
from .filters import FilterKind, FilterTerm, ParsedFilterRequest, parse_filter_request, FilterCompiler, OPERATOR_REGISTRY, register_operator
from .plan import QueryPlan, WindowSpec, JoinStep
from .relations import RelationDescriptor, RelationRegistry, RelationResolver, ResolvedPath
from .grouping import GroupConfig, GroupSpec, GroupByPlanner, parse_group_bies
from .hierarchy import GroupNode, GroupPage, HierarchicalResponseBuilder, calculate_aggregations
from .pagination import Pagination
from .serialization import ItemSerializer

__all__ = [
    'SemanticType','ColumnTypeMap',
    'FilterKind','FilterTerm','ParsedFilterRequest','parse_filter_request','FilterCompiler','OPERATOR_REGISTRY','register_operator',
    'QueryPlan','WindowSpec','JoinStep',
    'RelationDescriptor','RelationRegistry','RelationResolver','ResolvedPath',
    'GroupConfig','GroupSpec','GroupByPlanner','parse_group_bies',
    'GroupNode','GroupPage','HierarchicalResponseBuilder','calculate_aggregations',
    'Pagination','ItemSerializer',
]
