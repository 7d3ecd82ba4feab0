"""
Prompt table for direct model analysis, keyed by AnalysisKind.

The table must cover every kind; a missing entry fails at import time.
"""

import json
from dataclasses import dataclass

from .models import AnalysisKind


SYSTEM_PROMPT = (
    "You are an expert writing assistant that analyzes story content and "
    "provides constructive feedback. Always respond with valid JSON only."
)


@dataclass(frozen=True)
class KindProfile:
    """What to look for in one kind of content and how to shape the answer."""

    insight_type: str
    subject: str
    focus: tuple[str, ...]
    details_example: dict


ANALYSIS_PROFILES: dict[AnalysisKind, KindProfile] = {
    AnalysisKind.CHARACTER: KindProfile(
        insight_type="character_development",
        subject="character",
        focus=(
            "Character development opportunities",
            "Missing backstory elements",
            "Personality consistency",
            "Relationship potential",
        ),
        details_example={
            "strengths": ["strength1"],
            "weaknesses": ["weakness1"],
            "development_potential": ["potential1"],
        },
    ),
    AnalysisKind.PLOT: KindProfile(
        insight_type="plot_structure",
        subject="plot",
        focus=(
            "Plot holes",
            "Pacing issues",
            "Conflict development",
            "Story logic consistency",
        ),
        details_example={
            "pacing": "assessment",
            "conflicts": ["conflict1"],
            "resolution": "assessment",
        },
    ),
    AnalysisKind.RESEARCH: KindProfile(
        insight_type="research_quality",
        subject="research",
        focus=(
            "Information gaps",
            "Source credibility",
            "Connections to the story",
            "Organization",
        ),
        details_example={
            "completeness": "assessment",
            "sources": ["source1"],
            "gaps": ["gap1"],
        },
    ),
    AnalysisKind.CHAPTER: KindProfile(
        insight_type="writing_quality",
        subject="chapter",
        focus=(
            "Structure and pacing",
            "Character consistency",
            "Plot advancement",
            "Scene transitions",
        ),
        details_example={
            "narrative_flow": "assessment",
            "dialogue": "assessment",
            "description": "assessment",
        },
    ),
}

_missing = set(AnalysisKind) - set(ANALYSIS_PROFILES)
if _missing:
    raise RuntimeError(f"No analysis profile for: {sorted(k.value for k in _missing)}")


def build_prompt(kind: AnalysisKind, content: str, max_chars: int = 2000) -> str:
    """User prompt for one analysis request."""
    profile = ANALYSIS_PROFILES[kind]
    focus = "\n".join(f"- {line}" for line in profile.focus)
    example = {
        "insights": [
            {
                "type": profile.insight_type,
                "summary": f"Brief summary of {profile.subject} analysis",
                "suggestions": ["suggestion1", "suggestion2"],
                "confidence": 0.8,
                "details": profile.details_example,
            }
        ]
    }
    return (
        f"Analyze this {profile.subject} content and provide insights.\n\n"
        f"Focus on:\n{focus}\n\n"
        f"Content: {content[:max_chars]}\n\n"
        f"Respond in this JSON format:\n{json.dumps(example, indent=2)}"
    )
