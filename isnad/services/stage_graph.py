"""
ISNAD Stage Graph.

Static definition of the review pipeline every ISNAD form walks through:

    ip_initiation → school_planning_review → ip_secondary_review
    → finance_review → security_facilities_review
    → head_of_education_review → investment_agency_review
    → tbc_final_approval

Each stage owns at most one editable section.  STAGE_SECTIONS is the only
place write permission is decided; the form service never compares stage
names to section names itself.

The graph has no state and no database access.
"""

# ── Stages ───────────────────────────────────────────────────────────────────

IP_INITIATION = "ip_initiation"
SCHOOL_PLANNING_REVIEW = "school_planning_review"
IP_SECONDARY_REVIEW = "ip_secondary_review"
FINANCE_REVIEW = "finance_review"
SECURITY_FACILITIES_REVIEW = "security_facilities_review"
HEAD_OF_EDUCATION_REVIEW = "head_of_education_review"
INVESTMENT_AGENCY_REVIEW = "investment_agency_review"
TBC_FINAL_APPROVAL = "tbc_final_approval"

STAGES: tuple[str, ...] = (
    IP_INITIATION,
    SCHOOL_PLANNING_REVIEW,
    IP_SECONDARY_REVIEW,
    FINANCE_REVIEW,
    SECURITY_FACILITIES_REVIEW,
    HEAD_OF_EDUCATION_REVIEW,
    INVESTMENT_AGENCY_REVIEW,
    TBC_FINAL_APPROVAL,
)

# ── Sections ─────────────────────────────────────────────────────────────────

SECTION_SCHOOL_PLANNING = "school_planning"
SECTION_INVESTMENT_PARTNERSHIPS = "investment_partnerships"
SECTION_FINANCE = "finance"
SECTION_SECURITY_FACILITIES = "security_facilities"

SECTIONS: tuple[str, ...] = (
    SECTION_SCHOOL_PLANNING,
    SECTION_INVESTMENT_PARTNERSHIPS,
    SECTION_FINANCE,
    SECTION_SECURITY_FACILITIES,
)

# Stage → editable section.  None marks a decision-only stage.
STAGE_SECTIONS: dict[str, str | None] = {
    IP_INITIATION: SECTION_INVESTMENT_PARTNERSHIPS,
    SCHOOL_PLANNING_REVIEW: SECTION_SCHOOL_PLANNING,
    IP_SECONDARY_REVIEW: SECTION_INVESTMENT_PARTNERSHIPS,
    FINANCE_REVIEW: SECTION_FINANCE,
    SECURITY_FACILITIES_REVIEW: SECTION_SECURITY_FACILITIES,
    HEAD_OF_EDUCATION_REVIEW: None,
    INVESTMENT_AGENCY_REVIEW: None,
    TBC_FINAL_APPROVAL: None,
}

# Owning department, used for queue labels and approval rows.
STAGE_DEPARTMENTS: dict[str, str] = {
    IP_INITIATION: "investment_partnerships",
    SCHOOL_PLANNING_REVIEW: "school_planning",
    IP_SECONDARY_REVIEW: "investment_partnerships",
    FINANCE_REVIEW: "finance",
    SECURITY_FACILITIES_REVIEW: "security_facilities",
    HEAD_OF_EDUCATION_REVIEW: "head_of_education",
    INVESTMENT_AGENCY_REVIEW: "investment_agency",
    TBC_FINAL_APPROVAL: "tbc",
}

# Entering this stage means every departmental review has passed and the
# form is ready to be bundled into a package.
PACKAGING_STAGE = INVESTMENT_AGENCY_REVIEW

# Fields that must be present before a section can be marked complete.
SECTION_REQUIRED_FIELDS: dict[str, tuple[str, ...]] = {
    SECTION_SCHOOL_PLANNING: ("assetStatus", "planningNeed", "hasProgrammingForm"),
    SECTION_INVESTMENT_PARTNERSHIPS: (
        "cityPreferred",
        "districtPreferred",
        "isCriticalArea",
        "hasInvestmentBlockers",
        "investmentProposal",
        "investmentType",
    ),
    SECTION_FINANCE: ("hasFinancialDues", "custodyItemsCleared"),
    SECTION_SECURITY_FACILITIES: ("structuralCondition", "hasDemolitionDecision"),
}


def is_valid_stage(stage: str) -> bool:
    return stage in STAGE_SECTIONS


def stage_index(stage: str) -> int:
    """Position of *stage* in the pipeline.  Raises KeyError for unknown stages."""
    if stage not in STAGE_SECTIONS:
        raise KeyError(stage)
    return STAGES.index(stage)


def stage_at(index: int) -> str:
    return STAGES[index]


def next_stage(stage: str) -> str | None:
    """Stage after *stage*, or None when *stage* is the last one."""
    idx = stage_index(stage) + 1
    return STAGES[idx] if idx < len(STAGES) else None


def section_for_stage(stage: str) -> str | None:
    return STAGE_SECTIONS.get(stage)


def is_decision_only(stage: str) -> bool:
    return stage in STAGE_SECTIONS and STAGE_SECTIONS[stage] is None


def stage_department(stage: str) -> str:
    return STAGE_DEPARTMENTS.get(stage, stage)


def seed_workflow_steps() -> list[dict]:
    """Fresh step list for a new form: all pending, the first one current."""
    return [
        {
            "stage": stage,
            "step_index": idx,
            "status": "current" if idx == 0 else "pending",
            "reviewer_name": None,
            "action_taken_at": None,
            "comments": None,
        }
        for idx, stage in enumerate(STAGES)
    ]


def describe() -> list[dict]:
    """Serialisable view of the graph for the API."""
    return [
        {
            "stage": stage,
            "step_index": idx,
            "section": STAGE_SECTIONS[stage],
            "department": STAGE_DEPARTMENTS[stage],
            "decision_only": STAGE_SECTIONS[stage] is None,
            "is_packaging_stage": stage == PACKAGING_STAGE,
        }
        for idx, stage in enumerate(STAGES)
    ]
