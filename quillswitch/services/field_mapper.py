"""Field mapping suggestions and atomic mapping replacement."""

import re
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from ..exceptions import MappingLockedError, MappingValidationError
from ..models.mapping import FieldMapping, MappingSuggestion, SuggestionResult
from ..models.project import ProjectStatus
from .transformer import TransformEngine

logger = logging.getLogger(__name__)


# Standard CRM field names, the spellings systems use for them, and whether
# the field is normally required.
COMMON_FIELDS: Dict[str, Dict] = {
    # Contact fields
    "email": {
        "variations": ["email", "email_address", "emailaddress", "contact_email", "primary_email",
                       "work_email", "business_email", "personal_email", "e_mail", "mail"],
        "required": True,
        "category": "contact",
    },
    "name": {
        "variations": ["name", "full_name", "fullname", "contact_name", "complete_name", "display_name"],
        "required": True,
        "category": "contact",
    },
    "first_name": {
        "variations": ["first_name", "firstname", "given_name", "givenname", "forename", "first",
                       "contact_firstname"],
        "required": False,
        "category": "contact",
    },
    "last_name": {
        "variations": ["last_name", "lastname", "surname", "family_name", "familyname", "contact_lastname"],
        "required": False,
        "category": "contact",
    },
    "phone": {
        "variations": ["phone", "phone_number", "phonenumber", "telephone", "mobile", "cell", "contact_phone",
                       "work_phone", "business_phone", "mobile_phone", "primary_phone", "phone_work",
                       "phone_mobile"],
        "required": False,
        "category": "contact",
    },
    "company": {
        "variations": ["company", "company_name", "companyname", "organization", "organisation", "business",
                       "employer", "firm", "company_id"],
        "required": False,
        "category": "contact",
    },
    "title": {
        "variations": ["title", "job_title", "jobtitle", "position", "role", "job_role", "job_position",
                       "designation", "job_function"],
        "required": False,
        "category": "contact",
    },

    # Account/Company fields
    "account_name": {
        "variations": ["account_name", "accountname", "company_name", "companyname", "business_name",
                       "organization_name", "org_name", "account", "account_id", "client_name"],
        "required": True,
        "category": "account",
    },
    "industry": {
        "variations": ["industry", "sector", "business_type", "company_industry", "account_industry",
                       "business_sector", "industry_type", "market_segment"],
        "required": False,
        "category": "account",
    },
    "website": {
        "variations": ["website", "web_site", "site", "url", "web", "company_website", "web_address",
                       "homepage", "domain", "web_url"],
        "required": False,
        "category": "account",
    },
    "employees": {
        "variations": ["employees", "employee_count", "num_employees", "number_of_employees", "company_size",
                       "company_employees", "staff_count", "headcount", "size", "total_employees"],
        "required": False,
        "category": "account",
    },
    "revenue": {
        "variations": ["revenue", "annual_revenue", "yearly_revenue", "company_revenue", "account_revenue",
                       "total_revenue", "turnover", "sales_revenue", "income"],
        "required": False,
        "category": "account",
    },

    # Address fields
    "address": {
        "variations": ["address", "street_address", "streetaddress", "mailing_address", "primary_address",
                       "billing_address", "shipping_address", "street", "address_line_1", "address1"],
        "required": False,
        "category": "address",
    },
    "city": {
        "variations": ["city", "town", "municipality", "locality", "city_name", "billing_city",
                       "shipping_city", "address_city"],
        "required": False,
        "category": "address",
    },
    "state": {
        "variations": ["state", "province", "region", "county", "territory", "billing_state",
                       "shipping_state", "address_state", "state_province"],
        "required": False,
        "category": "address",
    },
    "postal_code": {
        "variations": ["postal_code", "postalcode", "zip", "zip_code", "zipcode", "billing_zip",
                       "shipping_zip", "address_zip", "pincode", "postcode"],
        "required": False,
        "category": "address",
    },
    "country": {
        "variations": ["country", "nation", "billing_country", "shipping_country", "address_country",
                       "country_code", "country_name"],
        "required": False,
        "category": "address",
    },

    # Opportunity/Deal fields
    "amount": {
        "variations": ["amount", "deal_amount", "opportunity_amount", "value", "deal_value",
                       "opportunity_value", "price", "contract_value", "total_amount"],
        "required": False,
        "category": "opportunity",
    },
    "stage": {
        "variations": ["stage", "deal_stage", "opportunity_stage", "sales_stage", "pipeline_stage", "status",
                       "deal_status", "phase", "step"],
        "required": False,
        "category": "opportunity",
    },
    "close_date": {
        "variations": ["close_date", "closedate", "expected_close_date", "close", "closing_date",
                       "completion_date", "end_date", "finish_date", "deal_close_date"],
        "required": False,
        "category": "opportunity",
    },
    "probability": {
        "variations": ["probability", "win_probability", "likelihood", "confidence", "chance", "win_rate",
                       "success_probability", "forecast", "win_likelihood"],
        "required": False,
        "category": "opportunity",
    },

    # Additional common fields
    "description": {
        "variations": ["description", "notes", "details", "comments", "info", "summary", "overview", "about",
                       "remarks", "text"],
        "required": False,
        "category": "general",
    },
    "owner": {
        "variations": ["owner", "owner_id", "owner_name", "assigned_to", "assignee", "responsible", "sales_rep",
                       "rep", "agent", "account_manager"],
        "required": False,
        "category": "general",
    },
    "date_created": {
        "variations": ["date_created", "created_date", "creation_date", "date_added", "created_on",
                       "created_at", "create_date", "entry_date", "createddate", "createdate"],
        "required": False,
        "category": "general",
    },
    "date_modified": {
        "variations": ["date_modified", "modified_date", "last_modified", "updated_date", "updated_on",
                       "updated_at", "last_update", "edit_date", "lastmodifieddate"],
        "required": False,
        "category": "general",
    },
}


def normalize_field_name(name: str) -> str:
    """Lowercase and drop everything but letters and digits."""
    return re.sub(r"[^a-z0-9]", "", name.lower())


def tokenize_field_name(name: str) -> List[str]:
    """Split snake_case, kebab-case and camelCase names into lowercase words."""
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", name)
    return [t for t in re.split(r"[\s_\-.]+", spaced.lower()) if t]


def levenshtein_distance(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (char_a != char_b),
            ))
        previous = current
    return previous[-1]


def string_similarity(a: str, b: str) -> float:
    """Normalized Levenshtein similarity in [0, 1]."""
    if not a and not b:
        return 1.0
    longest = max(len(a), len(b))
    return 1.0 - levenshtein_distance(a, b) / longest


def score_pair(source_field: str, destination_field: str) -> Optional[Tuple[float, str]]:
    """
    Score how well a source field maps onto a destination field.

    Tries, in order of trust: exact name match, the common-field alias
    table, then plain name similarity.

    Returns:
        (confidence, reason), or None if the names look unrelated
    """
    if source_field.lower() == destination_field.lower():
        return 1.0, "Exact field name match"

    pattern = _score_pattern(source_field, destination_field)
    if pattern:
        return pattern

    return _score_similarity(source_field, destination_field)


def _score_pattern(source_field: str, destination_field: str) -> Optional[Tuple[float, str]]:
    source_norm = normalize_field_name(source_field)
    dest_norm = normalize_field_name(destination_field)
    dest_lower = destination_field.lower()
    best: Optional[Tuple[float, str]] = None

    for standard, info in COMMON_FIELDS.items():
        variations = info["variations"]
        category = info["category"]
        if not any(normalize_field_name(v) == source_norm for v in variations):
            continue

        candidate = None
        if any(v.lower() == dest_lower for v in variations):
            candidate = (0.95, f"Standard field pattern match for {category} data")
        elif any(normalize_field_name(v) == dest_norm for v in variations):
            candidate = (0.9, f"Common field pattern match for {category} data")
        elif normalize_field_name(standard) in dest_norm:
            candidate = (0.85, f"Destination field contains the standard {standard} pattern")
        else:
            for variant in variations:
                variant_norm = normalize_field_name(variant)
                similarity = string_similarity(variant_norm, dest_norm)
                if similarity > 0.7:
                    candidate = (
                        0.7 + similarity * 0.15,
                        f"Strong similarity to standard {category} field pattern",
                    )
                    break
                if variant_norm in dest_norm or dest_norm in variant_norm:
                    candidate = (0.7, f"Partial match with {category} field pattern")
                    break

        if candidate and (best is None or candidate[0] > best[0]):
            best = candidate

    return best


def _score_similarity(source_field: str, destination_field: str) -> Optional[Tuple[float, str]]:
    similarity = string_similarity(normalize_field_name(source_field), normalize_field_name(destination_field))

    source_tokens = tokenize_field_name(source_field)
    dest_tokens = tokenize_field_name(destination_field)
    shared = [t for t in source_tokens if t in dest_tokens]
    token_similarity = len(shared) / max(len(source_tokens), len(dest_tokens), 1)

    combined = max(similarity, token_similarity)
    if combined > 0.85:
        return 0.75, "High field name similarity"
    if combined > 0.7:
        return 0.65, "Good field name similarity"
    if combined > 0.5:
        return 0.5, "Moderate field name similarity"
    if shared:
        return 0.4, f"Shares {len(shared)} word parts"
    return None


def _is_commonly_required(field_name: str) -> bool:
    norm = normalize_field_name(field_name)
    for info in COMMON_FIELDS.values():
        if info["required"] and any(normalize_field_name(v) == norm for v in info["variations"]):
            return True
    return False


def resolve_conflicts(suggestions: Iterable[MappingSuggestion]) -> List[MappingSuggestion]:
    """Keep at most one suggestion per source field and per destination field.

    Highest confidence wins; ties keep input order.
    """
    ordered = sorted(enumerate(suggestions), key=lambda pair: (-pair[1].confidence, pair[0]))
    claimed_sources = set()
    claimed_destinations = set()
    result = []
    for _, suggestion in ordered:
        if suggestion.source_field in claimed_sources or suggestion.destination_field in claimed_destinations:
            continue
        claimed_sources.add(suggestion.source_field)
        claimed_destinations.add(suggestion.destination_field)
        result.append(suggestion)
    return result


class FieldMapper:
    """
    Suggests and applies field mappings for object types.

    The heuristic matcher always runs. An optional AI advisor (see
    ``LLMMappingAdvisor``) can replace or add to its suggestions; if the
    advisor fails, heuristic suggestions are returned on their own.
    """

    def __init__(self, store=None, advisor=None, transform_engine: Optional[TransformEngine] = None):
        """
        Initialize the field mapper.

        Args:
            store: MigrationStore holding mappings (needed for apply/missing_required)
            advisor: Optional AI advisor with a ``suggest_mappings`` method
            transform_engine: Engine used to validate transformation rules
        """
        self.store = store
        self.advisor = advisor
        self.transform_engine = transform_engine or TransformEngine()

    def suggest_mappings(
        self,
        source_fields: List[str],
        destination_fields: List[str],
        required_fields: Optional[List[str]] = None,
        object_type: Optional[str] = None
    ) -> SuggestionResult:
        """
        Suggest source to destination field mappings.

        Args:
            source_fields: Field names on the source object type
            destination_fields: Field names on the destination object type
            required_fields: Destination fields that must be mapped; defaults to
                the commonly required fields found among ``destination_fields``
            object_type: Object type name, passed to the AI advisor as context

        Returns:
            SuggestionResult sorted by confidence, with unmapped required
            destination fields in ``needs_manual_mapping``
        """
        if required_fields is None:
            required_fields = [f for f in destination_fields if _is_commonly_required(f)]
        required = set(required_fields)

        heuristic = self._heuristic_suggestions(source_fields, destination_fields)
        provider = "heuristic"

        if self.advisor is not None:
            try:
                ai_suggestions = self.advisor.suggest_mappings(
                    source_fields, destination_fields, required_fields, object_type=object_type
                )
            except Exception as e:
                logger.warning(f"AI mapping unavailable, using heuristic suggestions only: {e}")
            else:
                heuristic = self._merge_ai_suggestions(heuristic, ai_suggestions, source_fields, destination_fields)
                provider = "ai+heuristic"

        suggestions = resolve_conflicts(heuristic)
        for suggestion in suggestions:
            suggestion.is_required = suggestion.destination_field in required

        mapped = {s.destination_field for s in suggestions}
        needs_manual = [f for f in required_fields if f not in mapped]
        if needs_manual:
            logger.info(f"Required fields need manual mapping: {', '.join(needs_manual)}")

        return SuggestionResult(suggestions=suggestions, needs_manual_mapping=needs_manual, provider=provider)

    def _heuristic_suggestions(
        self,
        source_fields: List[str],
        destination_fields: List[str]
    ) -> List[MappingSuggestion]:
        candidates = []
        for source_field in source_fields:
            for destination_field in destination_fields:
                scored = score_pair(source_field, destination_field)
                if scored:
                    confidence, reason = scored
                    candidates.append(MappingSuggestion(
                        source_field=source_field,
                        destination_field=destination_field,
                        confidence=round(confidence, 4),
                        reason=reason,
                    ))
        return resolve_conflicts(candidates)

    def _merge_ai_suggestions(
        self,
        heuristic: List[MappingSuggestion],
        ai_suggestions: List[MappingSuggestion],
        source_fields: List[str],
        destination_fields: List[str]
    ) -> List[MappingSuggestion]:
        by_source = {s.source_field: s for s in heuristic}
        for suggestion in ai_suggestions:
            # Ignore fields the model invented
            if suggestion.source_field not in source_fields or suggestion.destination_field not in destination_fields:
                logger.debug(f"Dropping AI suggestion for unknown field: {suggestion.source_field}")
                continue
            existing = by_source.get(suggestion.source_field)
            if existing is None or suggestion.confidence >= existing.confidence:
                by_source[suggestion.source_field] = suggestion
        return list(by_source.values())

    def build_mappings(
        self,
        object_type_id: str,
        suggestions: List[MappingSuggestion],
        min_confidence: float = 0.5
    ) -> List[FieldMapping]:
        """Turn suggestions into validated field mappings."""
        mappings = [
            FieldMapping(
                object_type_id=object_type_id,
                source_field=s.source_field,
                destination_field=s.destination_field,
                is_required=s.is_required,
                transformation_rule=s.transformation_rule,
                confidence=s.confidence,
            )
            for s in suggestions
            if s.confidence >= min_confidence
        ]
        self.validate_mappings(mappings)
        return mappings

    def validate_mappings(self, mappings: List[FieldMapping]) -> None:
        """
        Check a mapping set before it is stored.

        Raises:
            MappingValidationError: On empty field names, unparseable rules, or
                two required mappings writing the same destination field
        """
        required_destinations = set()
        for mapping in mappings:
            if not mapping.source_field or not mapping.destination_field:
                raise MappingValidationError("Mappings need both a source and a destination field")
            self.transform_engine.parse_rule(mapping.transformation_rule)
            if mapping.is_required:
                if mapping.destination_field in required_destinations:
                    raise MappingValidationError(
                        f"Destination field '{mapping.destination_field}' is the target of more than one required mapping"
                    )
                required_destinations.add(mapping.destination_field)

    def apply_mappings(
        self,
        object_type_id: str,
        suggestions: List[MappingSuggestion],
        min_confidence: float = 0.5
    ) -> bool:
        """
        Replace every mapping of an object type in one step.

        Args:
            object_type_id: Object type whose mappings are replaced
            suggestions: New mapping set; entries below ``min_confidence`` are dropped
            min_confidence: Lowest confidence accepted

        Returns:
            True once the new set is stored

        Raises:
            MappingLockedError: If the owning project is running
            MappingValidationError: If the set is invalid; stored mappings are untouched
        """
        if self.store is None:
            raise RuntimeError("FieldMapper needs a store to apply mappings")

        object_type = self.store.get_object_type(object_type_id)
        project = self.store.get_project(object_type.project_id)
        if project.status == ProjectStatus.IN_PROGRESS:
            raise MappingLockedError(
                f"Mappings of {object_type.name} cannot change while project {project.id} is in progress"
            )

        mappings = self.build_mappings(object_type_id, suggestions, min_confidence)
        self.store.replace_field_mappings(object_type_id, mappings)
        logger.info(f"Applied {len(mappings)} field mappings to {object_type.name} ({object_type_id})")
        return True

    def missing_required(self, object_type_id: str, required_fields: List[str]) -> List[str]:
        """Required destination fields with no stored mapping."""
        mapped = {m.destination_field for m in self.store.get_field_mappings(object_type_id)}
        return [f for f in required_fields if f not in mapped]
