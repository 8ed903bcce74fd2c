"""Built-in session types.

Each entry is an ordered step list with the capabilities an agent needs for
every step, the configuration keys forwarded as context and the earlier
artifacts a step builds on.
"""

from typing import Iterable, Mapping

from ..models import SessionArtifact
from .types import SessionType, SessionTypeRegistry, StepDefinition, default_report


def step(
    name: str,
    capabilities: Iterable[str],
    context_keys: Iterable[str] = (),
    requires: Iterable[str] = (),
) -> StepDefinition:
    return StepDefinition(
        name=name,
        capabilities=frozenset(capabilities),
        context_keys=tuple(context_keys),
        requires=tuple(requires),
    )


# Report builders


def standup_report(
    session_type: SessionType, artifacts: list[SessionArtifact], configuration: Mapping
) -> dict:
    report = default_report(session_type, artifacts, configuration)
    results = report["results"]
    report["metadata"] = {
        "team": configuration.get("team_name"),
        "sprint": configuration.get("sprint_number"),
        "version": configuration.get("version", "1.0.0"),
    }
    report["progress_analysis"] = results.get("progress_updates", {})
    report["blocker_assessment"] = results.get("blocker_identification", {})
    report["action_plan"] = results.get("action_planning", {})
    return report


def release_report(
    session_type: SessionType, artifacts: list[SessionArtifact], configuration: Mapping
) -> dict:
    report = default_report(session_type, artifacts, configuration)
    results = report["results"]
    report["release_version"] = configuration.get("release_version")
    report["risks"] = results.get("risk_assessment", {})
    report["schedule"] = results.get("schedule_planning", {})
    report["rollback_plan"] = results.get("rollback_planning", {})
    return report


def estimation_report(
    session_type: SessionType, artifacts: list[SessionArtifact], configuration: Mapping
) -> dict:
    report = default_report(session_type, artifacts, configuration)
    results = report["results"]
    report["project"] = configuration.get("project_name")
    report["estimate"] = {
        "effort": results.get("effort_estimation", {}),
        "timeline": results.get("timeline_planning", {}),
        "cost": results.get("cost_estimation", {}),
    }
    return report


BUILTIN_SESSION_TYPES: tuple[SessionType, ...] = (
    SessionType(
        name="daily_standup",
        description="Daily team sync: progress, blockers, workload and actions.",
        report_builder=standup_report,
        steps=(
            step("attendance_check", ["team_management", "attendance_tracking"],
                 ["team_members", "meeting_schedule"]),
            step("progress_updates", ["progress_tracking", "update_management"],
                 ["team_members", "sprint_goals"]),
            step("blocker_identification", ["issue_identification", "problem_solving"],
                 ["current_sprint"], requires=["progress_updates"]),
            step("workload_assessment", ["workload_analysis", "capacity_planning"],
                 ["team_capacity"], requires=["progress_updates"]),
            step("priority_review", ["priority_management", "goal_tracking"],
                 ["sprint_goals"]),
            step("resource_coordination", ["resource_management", "team_coordination"],
                 ["skill_matrix"], requires=["blocker_identification", "workload_assessment"]),
            step("action_planning", ["action_planning", "task_management"],
                 requires=["blocker_identification", "priority_review"]),
            step("timeline_check", ["timeline_management", "progress_tracking"],
                 ["sprint_timeline"], requires=["action_planning"]),
        ),
    ),
    SessionType(
        name="release_planning",
        description="Plan a release from feature analysis to communication.",
        report_builder=release_report,
        steps=(
            step("feature_analysis", ["feature_analysis", "release_planning"],
                 ["release_version", "planned_features", "requirements"]),
            step("dependency_mapping", ["dependency_analysis", "system_architecture"],
                 requires=["feature_analysis"]),
            step("risk_assessment", ["risk_analysis", "release_management"],
                 requires=["feature_analysis", "dependency_mapping"]),
            step("resource_planning", ["resource_planning", "team_management"],
                 ["team_capacity", "available_resources"]),
            step("schedule_planning", ["schedule_planning", "timeline_management"],
                 ["release_date"], requires=["resource_planning"]),
            step("deployment_planning", ["deployment_planning", "release_management"],
                 ["environments"], requires=["schedule_planning"]),
            step("rollback_planning", ["rollback_planning", "risk_management"],
                 requires=["risk_assessment", "deployment_planning"]),
            step("communication_planning", ["communication_planning", "stakeholder_management"],
                 ["stakeholders"], requires=["schedule_planning"]),
        ),
    ),
    SessionType(
        name="tech_debt",
        description="Assess technical debt and plan its remediation.",
        steps=(
            step("code_analysis", ["code_analysis", "technical_debt_assessment"],
                 ["codebase_path"]),
            step("architecture_review", ["architecture_analysis", "design_patterns"]),
            step("dependency_analysis", ["dependency_analysis", "version_management"]),
            step("test_coverage_analysis", ["test_analysis", "coverage_assessment"],
                 ["coverage_targets"]),
            step("performance_impact_analysis", ["performance_analysis", "impact_assessment"],
                 requires=["code_analysis"]),
            step("maintenance_cost_analysis", ["cost_analysis", "resource_management"],
                 requires=["code_analysis"]),
            step("debt_prioritization", ["prioritization", "impact_assessment"],
                 requires=["performance_impact_analysis", "maintenance_cost_analysis"]),
            step("remediation_planning", ["remediation_planning", "resource_planning"],
                 requires=["debt_prioritization"]),
        ),
    ),
    SessionType(
        name="technical_debt_prioritization",
        description="Rank known technical debt by impact, effort and risk.",
        steps=(
            step("debt_identification", ["code_analysis", "debt_identification"],
                 ["codebase_path"]),
            step("code_quality_analysis", ["quality_analysis", "code_metrics"]),
            step("impact_assessment", ["impact_analysis", "business_analysis"],
                 requires=["debt_identification"]),
            step("effort_estimation", ["effort_estimation", "resource_planning"],
                 requires=["debt_identification"]),
            step("risk_analysis", ["risk_analysis", "impact_assessment"],
                 requires=["impact_assessment"]),
            step("cost_benefit_analysis", ["cost_analysis", "benefit_analysis"],
                 requires=["impact_assessment", "effort_estimation"]),
            step("dependency_mapping", ["dependency_analysis", "architecture_analysis"]),
            step("debt_prioritization", ["prioritization", "decision_making"],
                 requires=["cost_benefit_analysis", "risk_analysis"]),
        ),
    ),
    SessionType(
        name="security_audit",
        description="Audit, probe for vulnerabilities and recommend improvements.",
        steps=(
            step("security_audit", ["security_analysis", "compliance_assessment"],
                 ["scope", "systems"]),
            step("vulnerability_identification", ["penetration_testing", "vulnerability_assessment"],
                 requires=["security_audit"]),
            step("improvement_recommendations", ["security_architecture", "threat_modeling"],
                 requires=["vulnerability_identification"]),
        ),
    ),
    SessionType(
        name="sprint_retrospective",
        description="Look back at a sprint and agree on improvements.",
        steps=(
            step("sprint_review", ["progress_tracking", "performance_analysis"],
                 ["sprint_number", "sprint_goals"]),
            step("feedback_collection", ["team_management", "communication_management"],
                 ["team_members"]),
            step("improvement_identification", ["process_optimization", "problem_solving"],
                 requires=["sprint_review", "feedback_collection"]),
            step("action_planning", ["action_planning", "task_management"],
                 requires=["improvement_identification"]),
        ),
    ),
    SessionType(
        name="api_design",
        description="Design an API from requirements to developer experience review.",
        steps=(
            step("api_requirements_analysis", ["api_design", "requirements_analysis"],
                 ["api_name", "description", "requirements"]),
            step("resource_identification", ["api_design", "domain_modeling"],
                 requires=["api_requirements_analysis"]),
            step("endpoint_design", ["api_design", "rest_design"],
                 requires=["resource_identification"]),
            step("data_model_definition", ["api_design", "data_modeling"],
                 requires=["resource_identification"]),
            step("security_scheme_design", ["api_security", "authentication_design"],
                 requires=["endpoint_design"]),
            step("specification_review", ["api_design", "technical_review"],
                 requires=["endpoint_design", "data_model_definition", "security_scheme_design"]),
            step("dx_review", ["developer_experience", "api_design"],
                 requires=["specification_review"]),
        ),
    ),
    SessionType(
        name="system_design",
        description="Architecture, components, interfaces and integration of a system.",
        steps=(
            step("requirements_analysis", ["requirements_analysis", "system_architecture"],
                 ["requirements", "constraints"]),
            step("architecture_planning", ["architecture_design", "technical_planning"],
                 requires=["requirements_analysis"]),
            step("component_design", ["component_design", "design_patterns"],
                 requires=["architecture_planning"]),
            step("interface_design", ["interface_design", "api_design"],
                 requires=["component_design"]),
            step("data_modeling", ["data_modeling", "database_design"],
                 requires=["component_design"]),
            step("security_design", ["security_design", "threat_modeling"],
                 requires=["architecture_planning"]),
            step("scalability_planning", ["scalability_design", "performance_optimization"],
                 ["expected_load"], requires=["architecture_planning"]),
            step("integration_design", ["integration_design", "system_integration"],
                 requires=["interface_design"]),
        ),
    ),
    SessionType(
        name="system_migration",
        description="Plan moving a system to a new platform.",
        steps=(
            step("system_analysis", ["system_analysis", "migration_planning"],
                 ["source_system", "target_system", "migration_type", "constraints"]),
            step("dependency_mapping", ["dependency_analysis", "system_architecture"],
                 requires=["system_analysis"]),
            step("strategy_planning", ["migration_strategy", "technical_planning"],
                 ["success_criteria"], requires=["system_analysis", "dependency_mapping"]),
            step("data_migration_planning", ["data_migration", "data_transformation"],
                 ["data_sources", "validation_criteria"], requires=["strategy_planning"]),
            step("risk_assessment", ["risk_analysis", "migration_planning"],
                 requires=["strategy_planning"]),
            step("rollback_planning", ["rollback_planning", "disaster_recovery"],
                 requires=["risk_assessment"]),
            step("testing_strategy", ["test_planning", "quality_assurance"],
                 ["test_environments"], requires=["strategy_planning"]),
            step("timeline_planning", ["project_planning", "resource_management"],
                 ["migration_window", "available_resources"], requires=["testing_strategy"]),
        ),
    ),
    SessionType(
        name="performance_optimization",
        description="Profile a system and plan optimizations.",
        steps=(
            step("baseline_profiling", ["performance_profiling", "metrics_analysis"],
                 ["target_system", "performance_goals"]),
            step("bottleneck_analysis", ["bottleneck_detection", "performance_analysis"],
                 requires=["baseline_profiling"]),
            step("resource_monitoring", ["resource_monitoring", "system_analysis"]),
            step("code_profiling", ["code_profiling", "performance_optimization"],
                 requires=["bottleneck_analysis"]),
            step("database_analysis", ["database_analysis", "query_optimization"]),
            step("caching_assessment", ["cache_analysis", "performance_tuning"]),
            step("load_testing", ["load_testing", "performance_measurement"],
                 ["expected_load"]),
            step("optimization_planning", ["optimization_planning", "performance_tuning"],
                 requires=["bottleneck_analysis", "code_profiling", "load_testing"]),
        ),
    ),
    SessionType(
        name="quality_assurance",
        description="Review quality across code, tests, security, usability and docs.",
        steps=(
            step("requirements_review", ["requirements_analysis", "quality_assessment"],
                 ["requirements"]),
            step("code_quality_analysis", ["code_analysis", "quality_metrics"]),
            step("test_coverage_analysis", ["test_analysis", "coverage_assessment"],
                 ["coverage_targets"]),
            step("security_assessment", ["security_analysis", "vulnerability_assessment"]),
            step("performance_testing", ["performance_testing", "load_testing"]),
            step("usability_evaluation", ["usability_testing", "accessibility_assessment"]),
            step("documentation_review", ["documentation_analysis", "technical_writing"]),
            step("compliance_verification", ["compliance_assessment", "regulatory_analysis"],
                 ["regulations"]),
        ),
    ),
    SessionType(
        name="compliance_review",
        description="Check code, docs, security, privacy and licenses against regulations.",
        steps=(
            step("compliance_requirements_gathering", ["compliance_analysis", "regulatory_knowledge"],
                 ["regulations", "jurisdictions"]),
            step("code_compliance_analysis", ["code_analysis", "compliance_checking"],
                 requires=["compliance_requirements_gathering"]),
            step("documentation_compliance_review", ["documentation_analysis", "compliance_checking"],
                 requires=["compliance_requirements_gathering"]),
            step("security_compliance_assessment", ["security_analysis", "compliance_checking"],
                 requires=["compliance_requirements_gathering"]),
            step("data_privacy_review", ["privacy_analysis", "compliance_checking"],
                 requires=["compliance_requirements_gathering"]),
            step("license_compliance_check", ["license_analysis", "compliance_checking"]),
            step("remediation_planning", ["remediation_planning", "resource_management"],
                 requires=["code_compliance_analysis", "security_compliance_assessment",
                           "data_privacy_review"]),
        ),
    ),
    SessionType(
        name="feature_discovery",
        description="Research, evaluate and prioritize candidate features.",
        steps=(
            step("market_research", ["market_analysis", "trend_analysis"],
                 ["product", "target_market"]),
            step("user_needs_analysis", ["user_research", "needs_assessment"],
                 ["user_feedback"]),
            step("competitive_analysis", ["competitive_analysis", "market_research"],
                 ["competitors"], requires=["market_research"]),
            step("technical_feasibility", ["technical_analysis", "feasibility_assessment"],
                 requires=["user_needs_analysis"]),
            step("impact_assessment", ["impact_analysis", "business_analysis"],
                 requires=["user_needs_analysis", "competitive_analysis"]),
            step("cost_analysis", ["cost_analysis", "resource_planning"],
                 requires=["technical_feasibility"]),
            step("risk_evaluation", ["risk_analysis", "mitigation_planning"],
                 requires=["technical_feasibility"]),
            step("feature_prioritization", ["prioritization", "decision_making"],
                 requires=["impact_assessment", "cost_analysis", "risk_evaluation"]),
        ),
    ),
    SessionType(
        name="project_estimation",
        description="Scope, break down and estimate a project.",
        report_builder=estimation_report,
        steps=(
            step("requirements_analysis", ["requirements_analysis", "project_planning"],
                 ["project_name", "requirements"]),
            step("scope_definition", ["scope_management", "project_planning"],
                 requires=["requirements_analysis"]),
            step("task_breakdown", ["task_analysis", "work_breakdown"],
                 requires=["scope_definition"]),
            step("effort_estimation", ["effort_estimation", "resource_planning"],
                 requires=["task_breakdown"]),
            step("resource_planning", ["resource_planning", "capacity_planning"],
                 ["team_capacity"], requires=["effort_estimation"]),
            step("risk_assessment", ["risk_analysis", "mitigation_planning"],
                 requires=["scope_definition"]),
            step("timeline_planning", ["timeline_planning", "dependency_management"],
                 ["deadline"], requires=["effort_estimation", "resource_planning"]),
            step("cost_estimation", ["cost_estimation", "financial_analysis"],
                 ["budget"], requires=["effort_estimation", "timeline_planning"]),
        ),
    ),
    SessionType(
        name="knowledge_transfer",
        description="Map knowledge, find gaps and produce learning material.",
        steps=(
            step("knowledge_mapping", ["knowledge_management", "domain_expertise"],
                 ["domain", "experts"]),
            step("gap_analysis", ["gap_analysis", "skill_assessment"],
                 ["learners"], requires=["knowledge_mapping"]),
            step("content_planning", ["instructional_design", "content_planning"],
                 requires=["gap_analysis"]),
            step("material_generation", ["content_creation", "technical_writing"],
                 requires=["content_planning"]),
            step("learning_path_creation", ["curriculum_design", "learning_path_optimization"],
                 requires=["material_generation"]),
            step("assessment_design", ["assessment_design", "evaluation"],
                 requires=["learning_path_creation"]),
            step("content_validation", ["content_validation", "quality_assurance"],
                 requires=["material_generation"]),
            step("knowledge_documentation", ["documentation", "knowledge_management"],
                 requires=["knowledge_mapping", "content_validation"]),
        ),
    ),
    SessionType(
        name="team_skills_assessment",
        description="Assess team skills and plan development.",
        steps=(
            step("team_analysis", ["team_analysis", "organizational_assessment"],
                 ["team_members", "roles"]),
            step("skill_mapping", ["skill_assessment", "competency_mapping"],
                 ["skill_matrix"], requires=["team_analysis"]),
            step("gap_analysis", ["gap_analysis", "skills_assessment"],
                 ["target_skills"], requires=["skill_mapping"]),
            step("competency_assessment", ["competency_assessment", "performance_evaluation"],
                 requires=["skill_mapping"]),
            step("training_needs_analysis", ["training_analysis", "learning_development"],
                 requires=["gap_analysis"]),
            step("development_planning", ["development_planning", "resource_management"],
                 requires=["training_needs_analysis"]),
            step("resource_planning", ["resource_planning", "budget_management"],
                 ["budget"], requires=["development_planning"]),
            step("performance_benchmarking", ["performance_analysis", "benchmarking"],
                 requires=["competency_assessment"]),
        ),
    ),
    SessionType(
        name="devops_optimization",
        description="Review delivery pipelines and infrastructure for improvements.",
        steps=(
            step("pipeline_analysis", ["pipeline_analysis", "ci_cd_optimization"],
                 ["pipelines"]),
            step("infrastructure_review", ["infrastructure_analysis", "resource_optimization"],
                 ["infrastructure"]),
            step("automation_assessment", ["automation_analysis", "process_optimization"],
                 requires=["pipeline_analysis"]),
            step("monitoring_evaluation", ["monitoring_analysis", "observability_optimization"]),
            step("security_review", ["security_analysis", "compliance_assessment"]),
            step("deployment_analysis", ["deployment_analysis", "release_management"],
                 requires=["pipeline_analysis"]),
            step("performance_optimization", ["performance_optimization", "resource_management"],
                 requires=["infrastructure_review"]),
            step("cost_optimization", ["cost_optimization", "resource_planning"],
                 ["budget"], requires=["infrastructure_review"]),
        ),
    ),
    SessionType(
        name="database_optimization",
        description="Tune queries, indexes, schema and storage of a database.",
        steps=(
            step("performance_analysis", ["performance_analysis", "database_monitoring"],
                 ["database", "slow_queries"]),
            step("query_optimization", ["query_optimization", "performance_tuning"],
                 requires=["performance_analysis"]),
            step("index_analysis", ["index_optimization", "database_tuning"],
                 requires=["performance_analysis"]),
            step("schema_review", ["schema_analysis", "data_modeling"]),
            step("storage_optimization", ["storage_optimization", "data_management"]),
            step("capacity_planning", ["capacity_planning", "resource_management"],
                 ["growth_projection"]),
            step("backup_review", ["backup_management", "disaster_recovery"]),
            step("security_assessment", ["security_analysis", "compliance_assessment"]),
        ),
    ),
    SessionType(
        name="documentation_sprint",
        description="Find documentation gaps and write what is missing.",
        steps=(
            step("documentation_coverage_analysis", ["documentation_analysis", "code_understanding"],
                 ["codebase_path", "existing_docs"]),
            step("documentation_task_planning", ["task_planning", "documentation_expertise"],
                 requires=["documentation_coverage_analysis"]),
            step("api_documentation_generation", ["api_documentation", "technical_writing"],
                 requires=["documentation_task_planning"]),
            step("code_documentation_generation", ["code_documentation", "code_analysis"],
                 requires=["documentation_task_planning"]),
            step("user_guide_generation", ["technical_writing", "user_experience"],
                 requires=["documentation_task_planning"]),
            step("architecture_documentation_generation", ["architecture_documentation", "system_design"],
                 requires=["documentation_task_planning"]),
            step("example_generation", ["code_generation", "technical_writing"],
                 requires=["api_documentation_generation"]),
            step("documentation_quality_review", ["quality_assurance", "documentation_review"],
                 requires=["api_documentation_generation", "user_guide_generation"]),
        ),
    ),
    SessionType(
        name="collaborative",
        description="General team collaboration: organize, distribute, track and decide.",
        steps=(
            step("team_organization", ["team_management", "organizational_planning"],
                 ["team_members", "roles"]),
            step("objective_setting", ["goal_setting", "strategic_planning"],
                 ["objectives"]),
            step("task_distribution", ["task_management", "resource_allocation"],
                 requires=["team_organization", "objective_setting"]),
            step("communication_planning", ["communication_management", "team_coordination"],
                 requires=["team_organization"]),
            step("workflow_coordination", ["workflow_management", "process_optimization"],
                 requires=["task_distribution"]),
            step("progress_tracking", ["progress_monitoring", "performance_tracking"],
                 requires=["workflow_coordination"]),
            step("issue_resolution", ["problem_solving", "conflict_resolution"],
                 requires=["progress_tracking"]),
            step("decision_making", ["decision_making", "consensus_building"],
                 requires=["issue_resolution"]),
        ),
    ),
)


def default_registry() -> SessionTypeRegistry:
    """Registry pre-loaded with the built-in session types."""
    return SessionTypeRegistry(BUILTIN_SESSION_TYPES)


def catalog_capabilities() -> frozenset[str]:
    """Every capability any built-in step asks for."""
    return frozenset(
        capability
        for session_type in BUILTIN_SESSION_TYPES
        for definition in session_type.steps
        for capability in definition.capabilities
    )
