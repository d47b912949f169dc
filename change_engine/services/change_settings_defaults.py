"""
Starter reference data seeded by ``initialize_defaults``.

One risk matrix, two approval workflows and four change categories. The
dicts use the same field names as the settings API payloads, so they go
through the regular validation path when seeded.
"""

_THRESHOLDS = {"low": 25, "medium": 50, "high": 75, "critical": 100}

DEFAULT_RISK_MATRIX = {
    "name": "Standard Risk Matrix",
    "description": "Default risk assessment matrix for change management",
    "calculation_method": "weighted_average",
    "is_active": True,
    "is_default": True,
    "risk_levels": [
        {
            "level": "low",
            "label": "Low Risk",
            "color": "#10b981",
            "description": "Minimal impact, low likelihood of issues",
            "auto_approval_allowed": True,
            "required_approvers": 1,
            "max_downtime_minutes": 30,
            "rollback_required": False,
            "testing_required": False,
            "documentation_required": True,
            "communication_required": False,
        },
        {
            "level": "medium",
            "label": "Medium Risk",
            "color": "#f59e0b",
            "description": "Moderate impact, some likelihood of issues",
            "auto_approval_allowed": False,
            "required_approvers": 2,
            "max_downtime_minutes": 120,
            "rollback_required": True,
            "testing_required": True,
            "documentation_required": True,
            "communication_required": True,
        },
        {
            "level": "high",
            "label": "High Risk",
            "color": "#ef4444",
            "description": "Significant impact, high likelihood of issues",
            "auto_approval_allowed": False,
            "required_approvers": 3,
            "max_downtime_minutes": 240,
            "rollback_required": True,
            "testing_required": True,
            "documentation_required": True,
            "communication_required": True,
        },
        {
            "level": "critical",
            "label": "Critical Risk",
            "color": "#dc2626",
            "description": "Severe impact, very high likelihood of issues",
            "auto_approval_allowed": False,
            "required_approvers": 4,
            "max_downtime_minutes": None,
            "rollback_required": True,
            "testing_required": True,
            "documentation_required": True,
            "communication_required": True,
        },
    ],
    "impact_categories": [
        {
            "category": "business_impact",
            "label": "Business Impact",
            "description": "Effect on business operations and revenue",
            "weight": 0.4,
            "thresholds": dict(_THRESHOLDS),
        },
        {
            "category": "technical_complexity",
            "label": "Technical Complexity",
            "description": "Complexity of the technical implementation",
            "weight": 0.3,
            "thresholds": dict(_THRESHOLDS),
        },
        {
            "category": "user_impact",
            "label": "User Impact",
            "description": "Impact on end users and customer experience",
            "weight": 0.2,
            "thresholds": dict(_THRESHOLDS),
        },
        {
            "category": "regulatory_compliance",
            "label": "Regulatory Compliance",
            "description": "Impact on regulatory compliance and audit requirements",
            "weight": 0.1,
            "thresholds": dict(_THRESHOLDS),
        },
    ],
}

# No business_hours trigger: both workflows apply at any time of day.
DEFAULT_WORKFLOWS = [
    {
        "name": "Standard Approval Workflow",
        "description": "Default approval workflow for most change requests",
        "trigger_conditions": {
            "risk_level": ["medium", "high"],
            "impact_level": ["medium", "high"],
            "emergency_override": False,
        },
        "approval_steps": [
            {
                "step_number": 1,
                "name": "Technical Review",
                "description": "Technical team reviews implementation plan",
                "required_approvers": 1,
                "approver_roles": ["Technical Lead", "Senior Engineer"],
                "timeout_hours": 24,
                "parallel_approval": False,
            },
            {
                "step_number": 2,
                "name": "Management Approval",
                "description": "Management approval for resource allocation",
                "required_approvers": 1,
                "approver_roles": ["Manager", "Director"],
                "timeout_hours": 48,
                "parallel_approval": False,
            },
        ],
        "escalation_rules": {
            "timeout_action": "escalate",
            "escalation_path": ["Director", "CTO"],
            "notification_frequency": 8,
        },
        "priority": 1,
        "is_active": True,
        "is_default": True,
    },
    {
        "name": "Emergency Change Workflow",
        "description": "Fast-track approval for emergency changes",
        "trigger_conditions": {
            "risk_level": ["critical"],
            "impact_level": ["critical"],
            "emergency_override": True,
        },
        "approval_steps": [
            {
                "step_number": 1,
                "name": "Emergency Approval",
                "description": "Emergency approval by senior staff",
                "required_approvers": 1,
                "approver_roles": ["Director", "CTO", "VP Engineering"],
                "timeout_hours": 2,
                "parallel_approval": True,
            },
        ],
        "escalation_rules": {
            "timeout_action": "auto_approve",
            "notification_frequency": 1,
        },
        "priority": 0,
        "is_active": True,
        "is_default": False,
    },
]

DEFAULT_CATEGORIES = [
    {
        "name": "Infrastructure",
        "description": "Changes to infrastructure components and systems",
        "color": "#3b82f6",
        "icon": "server",
        "default_risk_level": "medium",
        "default_impact_level": "medium",
        "requires_approval": True,
        "requires_testing": True,
        "requires_rollback": True,
        "requires_documentation": True,
        "requires_communication": True,
        "default_maintenance_window": {
            "duration_minutes": 120,
            "preferred_times": ["02:00", "03:00", "04:00"],
            "blackout_periods": [
                {"start": "08:00", "end": "18:00", "reason": "Business hours"},
                {"start": "12:00", "end": "13:00", "reason": "Lunch break"},
            ],
        },
        "notifications": {
            "stakeholders": ["IT Team", "Operations"],
            "channels": ["email", "slack"],
            "timing": ["created", "approved", "implemented", "completed"],
        },
        "is_active": True,
        "is_default": True,
        "sort_order": 1,
    },
    {
        "name": "Application",
        "description": "Changes to application software and configurations",
        "color": "#10b981",
        "icon": "code",
        "default_risk_level": "medium",
        "default_impact_level": "medium",
        "requires_approval": True,
        "requires_testing": True,
        "requires_rollback": True,
        "requires_documentation": True,
        "requires_communication": True,
        "default_maintenance_window": {
            "duration_minutes": 60,
            "preferred_times": ["01:00", "02:00", "03:00"],
        },
        "notifications": {
            "stakeholders": ["Development Team", "QA Team"],
            "channels": ["email", "slack"],
            "timing": ["created", "approved", "implemented"],
        },
        "is_active": True,
        "is_default": False,
        "sort_order": 2,
    },
    {
        "name": "Security",
        "description": "Security-related changes and updates",
        "color": "#ef4444",
        "icon": "shield",
        "default_risk_level": "high",
        "default_impact_level": "high",
        "requires_approval": True,
        "requires_testing": True,
        "requires_rollback": True,
        "requires_documentation": True,
        "requires_communication": True,
        "default_maintenance_window": {
            "duration_minutes": 180,
            "preferred_times": ["00:00", "01:00", "02:00"],
        },
        "notifications": {
            "stakeholders": ["Security Team", "Compliance Team"],
            "channels": ["email", "sms"],
            "timing": ["created", "approved", "rejected", "implemented", "completed"],
        },
        "is_active": True,
        "is_default": False,
        "sort_order": 3,
    },
    {
        "name": "Emergency",
        "description": "Emergency changes requiring immediate implementation",
        "color": "#dc2626",
        "icon": "alert-triangle",
        "default_risk_level": "critical",
        "default_impact_level": "critical",
        "requires_approval": True,
        "requires_testing": False,
        "requires_rollback": True,
        "requires_documentation": True,
        "requires_communication": True,
        "default_maintenance_window": {
            "duration_minutes": 240,
            "preferred_times": [],
        },
        "notifications": {
            "stakeholders": ["All Teams", "Management"],
            "channels": ["email", "sms", "slack"],
            "timing": ["created", "approved", "implemented", "completed"],
        },
        "is_active": True,
        "is_default": False,
        "sort_order": 4,
    },
]
