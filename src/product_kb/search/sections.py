"""Document template sections and how much code context each one wants."""

from dataclasses import dataclass, field, replace
from enum import Enum

from product_kb.db.models import SourceType

ALL_SOURCES = (SourceType.EVIDENCE, SourceType.ARTIFACT, SourceType.CODEBASE_MODULE)


class ContextStrategy(str, Enum):
    EVIDENCE_FIRST = "evidence_first"
    CODE_FIRST = "code_first"
    BALANCED = "balanced"


@dataclass(frozen=True)
class SectionConfig:
    """Retrieval profile of one template section.

    ``code_weight`` runs from 0 (all evidence) to 1 (all code).
    """

    heading: str
    code_weight: float
    source_types: tuple[SourceType, ...] = ALL_SOURCES
    depends_on: tuple[str, ...] = field(default_factory=tuple)
    guidance: str = ""
    strategy: ContextStrategy = ContextStrategy.BALANCED

    @property
    def descriptor(self) -> str:
        """Short text describing the section, used for relevance scoring."""
        return f"{self.heading}: {self.guidance}" if self.guidance else self.heading


PRD_SECTIONS = (
    SectionConfig(
        "Problem", 0.1, (SourceType.EVIDENCE,), (),
        "Ground every statement in customer evidence.", ContextStrategy.EVIDENCE_FIRST,
    ),
    SectionConfig(
        "Goals & Success Metrics", 0.2, (SourceType.EVIDENCE, SourceType.ARTIFACT), ("Problem",),
        "Each goal maps to a problem above. Metrics tied to evidence.", ContextStrategy.EVIDENCE_FIRST,
    ),
    SectionConfig(
        "User Stories", 0.3, (SourceType.EVIDENCE, SourceType.ARTIFACT),
        ("Problem", "Goals & Success Metrics"),
        "Each story traces to a goal. Personas from evidence.", ContextStrategy.EVIDENCE_FIRST,
    ),
    SectionConfig(
        "Requirements", 0.7, ALL_SOURCES,
        ("Problem", "Goals & Success Metrics", "User Stories"),
        "Reference specific codebase modules. Architecture constraints.", ContextStrategy.CODE_FIRST,
    ),
    SectionConfig(
        "Open Questions", 0.5, ALL_SOURCES,
        ("Problem", "Goals & Success Metrics", "User Stories", "Requirements"),
        "Flag gaps and conflicts across all prior sections.", ContextStrategy.BALANCED,
    ),
)

ONE_PAGER_SECTIONS = (
    SectionConfig(
        "TL;DR", 0.2, (SourceType.EVIDENCE,), (),
        "One-paragraph summary grounded in evidence.", ContextStrategy.EVIDENCE_FIRST,
    ),
    SectionConfig(
        "Context", 0.2, (SourceType.EVIDENCE, SourceType.ARTIFACT), ("TL;DR",),
        "Why now? Reference market signals and customer trends.", ContextStrategy.EVIDENCE_FIRST,
    ),
    SectionConfig(
        "Proposal", 0.5, ALL_SOURCES, ("TL;DR", "Context"),
        "What are we doing? Reference codebase when relevant.", ContextStrategy.BALANCED,
    ),
    SectionConfig(
        "Risks & Mitigations", 0.6, ALL_SOURCES, ("TL;DR", "Context", "Proposal"),
        "Technical and product risks. Reference code constraints.", ContextStrategy.CODE_FIRST,
    ),
    SectionConfig(
        "Next Steps", 0.4, ALL_SOURCES, ("TL;DR", "Context", "Proposal", "Risks & Mitigations"),
        "Actionable next steps with owners.", ContextStrategy.BALANCED,
    ),
)

USER_STORY_SECTIONS = (
    SectionConfig(
        "User Story", 0.2, (SourceType.EVIDENCE,), (),
        "Ground the story in customer evidence and personas.", ContextStrategy.EVIDENCE_FIRST,
    ),
    SectionConfig(
        "Acceptance Criteria", 0.6, (SourceType.EVIDENCE, SourceType.CODEBASE_MODULE), ("User Story",),
        "Specific, testable criteria. Reference code when relevant.", ContextStrategy.CODE_FIRST,
    ),
    SectionConfig(
        "Notes", 0.4, ALL_SOURCES, ("User Story", "Acceptance Criteria"),
        "Additional context, dependencies, and open items.", ContextStrategy.BALANCED,
    ),
)

TEMPLATE_SECTIONS: dict[str, tuple[SectionConfig, ...]] = {
    "prd": PRD_SECTIONS,
    "one_pager": ONE_PAGER_SECTIONS,
    "user_story": USER_STORY_SECTIONS,
}

FALLBACK_SECTION = SectionConfig("", 0.4, guidance="Balanced context from all sources.")

# Sections clusters are scored against for nudges
CLUSTER_SECTIONS = PRD_SECTIONS


def get_section_config(section_name: str, template_type: str | None = None) -> SectionConfig:
    """Find a section by heading (case-insensitive), preferring the given template.

    Unknown headings get a balanced fallback profile.
    """
    name = section_name.strip()
    search_order = []
    if template_type and template_type in TEMPLATE_SECTIONS:
        search_order.append(TEMPLATE_SECTIONS[template_type])
    search_order.extend(TEMPLATE_SECTIONS.values())

    for sections in search_order:
        for section in sections:
            if section.heading.lower() == name.lower():
                return section

    return replace(FALLBACK_SECTION, heading=name)
