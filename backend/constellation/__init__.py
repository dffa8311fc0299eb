"""
Constellation - Social Cluster Formation Engine
===============================================

Forms fixed-size clusters (default 49 members) around two resonant core
users, balancing compatibility, activity tiers and interest diversity.

ARCHITECTURE:
    User pair → ResonanceCalculator (tags, interactions, preferences, random)
              → ClusterFormationEngine
                    ├─ candidate retrieval (repositories)
                    ├─ TagDiversityEvaluator (caps, diversity score)
                    ├─ ActivityClassifier (tiers, balance)
                    └─ admission (CAS), quality, persistence
              → Cluster (expires after ttl_days, dissolved by the worker)

PUBLIC API:
- ResonanceCalculator, ResonanceResult, ResonanceStats
- DynamicWeightAdjuster, ResonanceWeights, WeightContext
- ActivityClassifier, ActivityLevel, ActivityRatios, ActivityScore
- TagDiversityEvaluator, DiversityConstraints, DiversityScore
- ClusterFormationEngine, FormationConfig, GenerationCheck
- Error taxonomy rooted at ConstellationError
"""

from .errors import (
    ConstellationError,
    ValidationError,
    ClusterNotFoundError,
    InsufficientPoolError,
    InsufficientResonanceError,
    TransientDataError,
    AdmissionConflictError,
)
from .similarity import tag_similarity, tag_set_diversity, recommend_tags
from .interaction_score import (
    InteractionBreakdown,
    InteractionPattern,
    score_interactions,
    analyze_pattern,
)
from .weights import (
    ResonanceWeights,
    WeightContext,
    DynamicWeightAdjuster,
    base_weights,
)
from .resonance import (
    ResonanceCalculator,
    ResonanceResult,
    ResonanceStats,
    content_preference_match,
    fallback_resonance,
)
from .activity import (
    ActivityClassifier,
    ActivityLevel,
    ActivityRatios,
    ActivityScore,
    ActivityStatistics,
    balance_score,
)
from .diversity import (
    TagDiversityEvaluator,
    DiversityConstraints,
    DiversityReport,
    DiversityScore,
    TagStatistics,
)
from .formation import (
    ClusterFormationEngine,
    FormationConfig,
    CandidateAnalysis,
    ClusterQuality,
    GenerationCheck,
    SelectionStrategy,
)

__all__ = [
    # Errors
    'ConstellationError',
    'ValidationError',
    'ClusterNotFoundError',
    'InsufficientPoolError',
    'InsufficientResonanceError',
    'TransientDataError',
    'AdmissionConflictError',

    # Signals
    'tag_similarity',
    'tag_set_diversity',
    'recommend_tags',
    'InteractionBreakdown',
    'InteractionPattern',
    'score_interactions',
    'analyze_pattern',
    'content_preference_match',
    'fallback_resonance',

    # Resonance
    'ResonanceWeights',
    'WeightContext',
    'DynamicWeightAdjuster',
    'base_weights',
    'ResonanceCalculator',
    'ResonanceResult',
    'ResonanceStats',

    # Activity
    'ActivityClassifier',
    'ActivityLevel',
    'ActivityRatios',
    'ActivityScore',
    'ActivityStatistics',
    'balance_score',

    # Diversity
    'TagDiversityEvaluator',
    'DiversityConstraints',
    'DiversityReport',
    'DiversityScore',
    'TagStatistics',

    # Formation
    'ClusterFormationEngine',
    'FormationConfig',
    'CandidateAnalysis',
    'ClusterQuality',
    'GenerationCheck',
    'SelectionStrategy',
]
