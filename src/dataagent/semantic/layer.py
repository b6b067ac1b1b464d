"""Semantic layer: business vocabulary mapped onto the schema.

Provides lookups for:
- Term matching (business terms → SQL conditions)
- Metric resolution (AOV, revenue, ... → SQL expressions)
- Relationship paths (table A → table B JOIN clauses, multi-hop via BFS)
- Domain guessing from question vocabulary
- Field provenance (verified vs ai_inferred) via the confidence registry

The definitions are inline module data; ``DEFAULT_SEMANTIC_LAYER`` is the
runtime source of truth and is never mutated.
"""

import re
from collections import deque
from dataclasses import dataclass, field

from dataagent.explain.values import is_identifier_column
from dataagent.results import Confidence, FieldConfidence


@dataclass(frozen=True)
class DomainConfig:
    tables: tuple[str, ...]
    description: str
    primary_table: str


@dataclass(frozen=True)
class TermMapping:
    terms: tuple[str, ...]
    sql_condition: str
    table: str
    description: str


@dataclass(frozen=True)
class MetricDefinition:
    name: str
    aliases: tuple[str, ...]
    sql_expression: str
    table: str
    description: str


@dataclass(frozen=True)
class RelationshipDefinition:
    from_table: str
    to_table: str
    join_sql: str
    description: str


@dataclass(frozen=True)
class ConfidenceEntry:
    """Provenance for a table; ``fields`` narrows it to specific columns."""

    table: str
    confidence: Confidence
    description: str
    fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class SemanticMatch:
    term: str
    sql_condition: str
    table: str
    description: str
    is_metric: bool = False
    metric_name: str | None = None


@dataclass(frozen=True)
class SemanticLayer:
    domains: dict[str, DomainConfig]
    terms: tuple[TermMapping, ...]
    metrics: tuple[MetricDefinition, ...]
    relationships: tuple[RelationshipDefinition, ...]
    confidence_registry: tuple[ConfidenceEntry, ...]
    table_aliases: dict[str, str] = field(default_factory=dict)

    def alias_for(self, table: str) -> str:
        return self.table_aliases.get(table, "t")

    def domain_for_table(self, table: str) -> str | None:
        for domain, config in self.domains.items():
            if table in config.tables:
                return domain
        return None


# =============================================================================
# Layer definition
# =============================================================================

DEFAULT_SEMANTIC_LAYER = SemanticLayer(
    domains={
        "ecommerce": DomainConfig(
            tables=("ecom_customers", "ecom_orders", "ecom_products"),
            description="B2C customer data from the storefront: orders, products, customer profiles",
            primary_table="ecom_customers",
        ),
        "crm": DomainConfig(
            tables=(
                "crm_contacts",
                "crm_companies",
                "crm_deals",
                "crm_activities",
                "crm_deal_line_items",
            ),
            description="B2B CRM data: contacts, companies, deals, activities",
            primary_table="crm_contacts",
        ),
        "campaigns": DomainConfig(
            tables=("email_campaigns", "email_customer_variants", "campaign_strategy_groups"),
            description="Email marketing campaigns and per-customer variant tracking",
            primary_table="email_campaigns",
        ),
        "behavioral": DomainConfig(
            tables=("customer_behavioral_profiles", "segments", "segment_members"),
            description="AI-computed customer behavior: lifecycle stages, RFM scores, engagement, segments",
            primary_table="customer_behavioral_profiles",
        ),
        "identity": DomainConfig(
            tables=("customer_identity_links",),
            description="Identity resolution linking B2C customers to B2B CRM contacts",
            primary_table="customer_identity_links",
        ),
    },
    terms=(
        # Customer value tiers
        TermMapping(
            ("VIP", "high value", "top customer", "best customer", "whale"),
            "total_spent > 500",
            "ecom_customers",
            "Customers with total spend above $500",
        ),
        TermMapping(
            ("new customer", "first-time buyer"),
            "orders_count = 1",
            "ecom_customers",
            "Customers with exactly 1 order",
        ),
        TermMapping(
            ("repeat customer", "returning customer"),
            "orders_count > 1",
            "ecom_customers",
            "Customers with more than 1 order",
        ),
        # Lifecycle
        TermMapping(
            ("inactive", "churned", "lost customer"),
            "lifecycle_stage IN ('lapsed', 'churned')",
            "customer_behavioral_profiles",
            "Customers who stopped purchasing",
        ),
        TermMapping(
            ("at risk", "at-risk", "about to churn"),
            "lifecycle_stage = 'at_risk'",
            "customer_behavioral_profiles",
            "Customers showing signs of leaving",
        ),
        TermMapping(
            ("champion", "most engaged"),
            "lifecycle_stage = 'champion'",
            "customer_behavioral_profiles",
            "Highest-value, most-engaged customers",
        ),
        # Deal stages
        TermMapping(
            ("open deal", "active deal", "in pipeline"),
            "stage NOT IN ('closed_won', 'closed_lost')",
            "crm_deals",
            "Deals still in the pipeline",
        ),
        TermMapping(
            ("won deal", "closed won"),
            "stage = 'closed_won'",
            "crm_deals",
            "Deals that were won",
        ),
        TermMapping(
            ("lost deal", "closed lost"),
            "stage = 'closed_lost'",
            "crm_deals",
            "Deals that were lost",
        ),
        TermMapping(
            ("in negotiation", "negotiation"),
            "stage = 'negotiation'",
            "crm_deals",
            "Deals in negotiation stage",
        ),
        # Campaign delivery
        TermMapping(
            ("sent campaign", "delivered campaign"),
            "delivery_status IN ('sent', 'delivered')",
            "email_customer_variants",
            "Campaign variants that were sent or delivered",
        ),
        TermMapping(
            ("email opened", "opened"),
            "delivery_status = 'opened'",
            "email_customer_variants",
            "Campaign variants that were opened",
        ),
        TermMapping(
            ("email bounced", "bounced"),
            "delivery_status = 'bounced'",
            "email_customer_variants",
            "Campaign variants that bounced",
        ),
    ),
    metrics=(
        MetricDefinition(
            "average_order_value",
            ("AOV", "average order value", "avg order value", "average order"),
            "AVG(total_price)",
            "ecom_orders",
            "Average dollar value per order",
        ),
        MetricDefinition(
            "total_revenue",
            ("total revenue", "total sales", "revenue"),
            "SUM(total_price)",
            "ecom_orders",
            "Sum of all order values",
        ),
        MetricDefinition(
            "order_count",
            ("number of orders", "order count", "how many orders"),
            "COUNT(*)",
            "ecom_orders",
            "Count of orders",
        ),
        MetricDefinition(
            "customer_count",
            ("number of customers", "customer count", "how many customers"),
            "COUNT(DISTINCT id)",
            "ecom_customers",
            "Count of unique customers",
        ),
        MetricDefinition(
            "deal_pipeline_value",
            ("pipeline value", "total pipeline", "deal value"),
            "SUM(value)",
            "crm_deals",
            "Sum of all deal values",
        ),
        MetricDefinition(
            "open_rate",
            ("open rate", "email open rate"),
            "ROUND(COUNT(*) FILTER (WHERE delivery_status = 'opened') * 100.0 / "
            "NULLIF(COUNT(*) FILTER (WHERE delivery_status IN ('sent', 'delivered', 'opened', 'clicked')), 0), 1)",
            "email_customer_variants",
            "Percentage of sent emails that were opened",
        ),
    ),
    relationships=(
        RelationshipDefinition(
            "ecom_customers", "ecom_orders",
            "JOIN ecom_orders o ON o.customer_id = c.id AND o.org_id = c.org_id",
            "Customer to their orders",
        ),
        RelationshipDefinition(
            "ecom_customers", "customer_behavioral_profiles",
            "JOIN customer_behavioral_profiles bp ON bp.ecom_customer_id = c.id AND bp.org_id = c.org_id",
            "Customer to their behavioral profile (lifecycle, RFM, engagement)",
        ),
        RelationshipDefinition(
            "ecom_customers", "segment_members",
            "JOIN segment_members sm ON sm.ecom_customer_id = c.id AND sm.org_id = c.org_id",
            "Customer to their segment memberships",
        ),
        RelationshipDefinition(
            "segment_members", "segments",
            "JOIN segments s ON s.id = sm.segment_id AND s.org_id = sm.org_id",
            "Segment membership to segment definition",
        ),
        RelationshipDefinition(
            "ecom_customers", "email_customer_variants",
            "JOIN email_customer_variants ecv ON ecv.ecom_customer_id = c.id AND ecv.org_id = c.org_id",
            "Customer to their campaign variants",
        ),
        RelationshipDefinition(
            "email_customer_variants", "email_campaigns",
            "JOIN email_campaigns ec ON ec.id = ecv.campaign_id AND ec.org_id = ecv.org_id",
            "Campaign variant to campaign definition",
        ),
        RelationshipDefinition(
            "ecom_customers", "customer_identity_links",
            "JOIN customer_identity_links cil ON cil.ecom_customer_id = c.id AND cil.org_id = c.org_id",
            "Ecommerce customer to identity link",
        ),
        RelationshipDefinition(
            "customer_identity_links", "crm_contacts",
            "JOIN crm_contacts cc ON cc.id = cil.crm_contact_id AND cc.org_id = cil.org_id",
            "Identity link to CRM contact",
        ),
        RelationshipDefinition(
            "crm_contacts", "crm_companies",
            "JOIN crm_companies comp ON comp.id = cc.company_id AND comp.org_id = cc.org_id",
            "CRM contact to their company",
        ),
        RelationshipDefinition(
            "crm_contacts", "crm_deals",
            "JOIN crm_deals d ON d.contact_id = cc.id AND d.org_id = cc.org_id",
            "CRM contact to their deals",
        ),
        RelationshipDefinition(
            "crm_deals", "crm_deal_line_items",
            "JOIN crm_deal_line_items dli ON dli.deal_id = d.id AND dli.org_id = d.org_id",
            "Deal to its line items",
        ),
        RelationshipDefinition(
            "crm_contacts", "crm_activities",
            "JOIN crm_activities ca ON ca.contact_id = cc.id AND ca.org_id = cc.org_id",
            "CRM contact to their logged activities",
        ),
    ),
    confidence_registry=(
        ConfidenceEntry(
            "customer_behavioral_profiles",
            Confidence.AI_INFERRED,
            "AI-computed during profiling runs. Values reflect model predictions, not direct observations.",
            fields=(
                "lifecycle_stage",
                "communication_style",
                "engagement_score",
                "recency_score",
                "frequency_score",
                "monetary_score",
                "predicted_next_purchase",
                "product_affinities",
            ),
        ),
        ConfidenceEntry(
            "segments",
            Confidence.AI_INFERRED,
            "Segments are AI-discovered or rule-based. Membership is computed, not manually assigned.",
        ),
        ConfidenceEntry("ecom_customers", Confidence.VERIFIED, "Imported from the storefront."),
        ConfidenceEntry("ecom_orders", Confidence.VERIFIED, "Imported from the storefront."),
        ConfidenceEntry("ecom_products", Confidence.VERIFIED, "Product catalog data."),
        ConfidenceEntry("crm_contacts", Confidence.VERIFIED, "User-entered CRM data."),
        ConfidenceEntry("crm_companies", Confidence.VERIFIED, "User-entered CRM data."),
        ConfidenceEntry("crm_deals", Confidence.VERIFIED, "User-entered CRM data."),
        ConfidenceEntry("email_campaigns", Confidence.VERIFIED, "Campaign delivery records."),
    ),
    table_aliases={
        "ecom_customers": "c",
        "ecom_orders": "o",
        "ecom_products": "p",
        "customer_behavioral_profiles": "bp",
        "segment_members": "sm",
        "segments": "s",
        "email_customer_variants": "ecv",
        "email_campaigns": "ec",
        "campaign_strategy_groups": "csg",
        "customer_identity_links": "cil",
        "crm_contacts": "cc",
        "crm_companies": "comp",
        "crm_deals": "d",
        "crm_deal_line_items": "dli",
        "crm_activities": "ca",
    },
)


def load_semantic_layer() -> SemanticLayer:
    return DEFAULT_SEMANTIC_LAYER


# =============================================================================
# Term matching
# =============================================================================

def _contains_phrase(text: str, phrase: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(phrase.lower())}(?!\w)", text) is not None


def find_term_matches(question: str, layer: SemanticLayer = DEFAULT_SEMANTIC_LAYER) -> list[SemanticMatch]:
    """Find business terms and metric aliases mentioned in a question.

    Only the first matching alias of each mapping is reported.
    """
    lower = question.lower()
    matches: list[SemanticMatch] = []

    for mapping in layer.terms:
        for term in mapping.terms:
            if _contains_phrase(lower, term):
                matches.append(
                    SemanticMatch(
                        term=term,
                        sql_condition=mapping.sql_condition,
                        table=mapping.table,
                        description=mapping.description,
                    )
                )
                break

    for metric in layer.metrics:
        for alias in metric.aliases:
            if _contains_phrase(lower, alias):
                matches.append(
                    SemanticMatch(
                        term=alias,
                        sql_condition=metric.sql_expression,
                        table=metric.table,
                        description=metric.description,
                        is_metric=True,
                        metric_name=metric.name,
                    )
                )
                break

    return matches


def find_metric(question: str, layer: SemanticLayer = DEFAULT_SEMANTIC_LAYER) -> MetricDefinition | None:
    """First metric whose alias appears in the question."""
    lower = question.lower()
    for metric in layer.metrics:
        if any(_contains_phrase(lower, alias) for alias in metric.aliases):
            return metric
    return None


# =============================================================================
# Relationships
# =============================================================================

def get_relationship(from_table: str, to_table: str, layer: SemanticLayer = DEFAULT_SEMANTIC_LAYER) -> str | None:
    for rel in layer.relationships:
        if rel.from_table == from_table and rel.to_table == to_table:
            return rel.join_sql
    return None


def find_join_path(from_table: str, to_table: str, layer: SemanticLayer = DEFAULT_SEMANTIC_LAYER) -> list[str]:
    """Shortest chain of JOIN clauses from one table to another.

    Returns an empty list when the tables are equal or unconnected.
    """
    if from_table == to_table:
        return []

    direct = get_relationship(from_table, to_table, layer)
    if direct:
        return [direct]

    visited = {from_table}
    queue: deque[tuple[str, list[str]]] = deque([(from_table, [])])
    while queue:
        table, path = queue.popleft()
        for rel in layer.relationships:
            if rel.from_table != table or rel.to_table in visited:
                continue
            new_path = path + [rel.join_sql]
            if rel.to_table == to_table:
                return new_path
            visited.add(rel.to_table)
            queue.append((rel.to_table, new_path))

    return []


# =============================================================================
# Domain guessing
# =============================================================================

DOMAIN_KEYWORDS = {
    "ecommerce": ["order", "customer", "product", "shopify", "purchase", "spend", "revenue", "cart", "shipping", "b2c"],
    "crm": ["deal", "contact", "company", "pipeline", "hubspot", "b2b", "prospect", "lead", "opportunity", "account"],
    "campaigns": ["campaign", "email", "sent", "opened", "clicked", "bounced", "newsletter", "marketing"],
    "behavioral": ["segment", "lifecycle", "rfm", "engagement", "churn", "at risk", "behavioral"],
}


def score_question_domains(question: str, layer: SemanticLayer = DEFAULT_SEMANTIC_LAYER) -> dict[str, int]:
    """Vocabulary score per domain, from term matches plus keyword hints."""
    lower = question.lower()
    scores: dict[str, int] = {}

    for match in find_term_matches(question, layer):
        domain = layer.domain_for_table(match.table)
        if domain:
            scores[domain] = scores.get(domain, 0) + 1

    for domain, keywords in DOMAIN_KEYWORDS.items():
        for keyword in keywords:
            if keyword in lower:
                scores[domain] = scores.get(domain, 0) + 1

    return scores


def domain_for_question(question: str, layer: SemanticLayer = DEFAULT_SEMANTIC_LAYER) -> str:
    """Most likely domain, or "all" when nothing or several domains match."""
    ranked = sorted(score_question_domains(question, layer).items(), key=lambda kv: kv[1], reverse=True)
    if not ranked:
        return "all"
    if len(ranked) == 1:
        return ranked[0][0]
    if ranked[0][1] - ranked[1][1] <= 1:
        return "all"
    return ranked[0][0]


# =============================================================================
# Provenance
# =============================================================================

def field_confidence(
    tables: list[str],
    columns: list[str],
    layer: SemanticLayer = DEFAULT_SEMANTIC_LAYER,
) -> list[FieldConfidence]:
    """Provenance entries for result columns that are not plainly verified.

    Only columns present in ``columns`` are reported. Identifier columns of
    whole-table entries are skipped; ids are record keys, not inferences.
    """
    results: list[FieldConfidence] = []
    seen: set[str] = set()

    for entry in layer.confidence_registry:
        if entry.table not in tables or entry.confidence == Confidence.VERIFIED:
            continue

        if entry.fields:
            candidates = [f for f in entry.fields if f in columns]
        else:
            candidates = [c for c in columns if not is_identifier_column(c)]

        for name in candidates:
            if name in seen:
                continue
            seen.add(name)
            results.append(
                FieldConfidence(
                    field=name,
                    confidence=entry.confidence,
                    source_table=entry.table,
                    description=entry.description,
                )
            )

    return results
