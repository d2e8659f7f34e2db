"""
Anonymization engine for survey responses.

Provides:
- Pattern-based detection and masking of identifiers (emails, phones,
  national ID numbers, IP addresses, card/bank numbers, ...)
- Partial masking that keeps a little context, or full replacement
- k-anonymity grouping over token-overlap similarity
- Compliance verification with issues and recommendations
"""

import hashlib
import math
import re
import secrets
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable

from .models import AnonymizationLevel, ResponseRecord


# Matches longer than this keep their first/last PARTIAL_KEEP characters
# when masking at the partial level.
PARTIAL_MASK_MIN_LENGTH = 8
PARTIAL_KEEP = 2


@dataclass(frozen=True)
class PIIPattern:
    """A detectable identifier."""
    name: str
    pattern: re.Pattern
    placeholder: str
    description: str
    severity: str = "medium"
    full_only: bool = False


_UPPER = "A-ZĄĆĘŁŃÓŚŹŻ"
_LOWER = "a-ząćęłńóśźż"

# Order matters: broader numeric patterns run after the specific ones.
PII_PATTERNS: tuple[PIIPattern, ...] = (
    PIIPattern(
        "email",
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[EMAIL]", "Email addresses",
    ),
    PIIPattern(
        "url",
        re.compile(r"\bhttps?://[^\s<>\"']+|\bwww\.[^\s<>\"']+"),
        "[URL]", "URLs and links", severity="low",
    ),
    PIIPattern(
        "iban",
        re.compile(r"\b[A-Z]{2}\d{2}[A-Z0-9]{11,30}\b"),
        "[IBAN]", "IBAN bank account numbers", severity="high",
    ),
    PIIPattern(
        "credit_card",
        re.compile(r"\b(?:\d{4}[- ]?){3}\d{4}\b"),
        "[CARD]", "Payment card numbers", severity="high",
    ),
    PIIPattern(
        "ip_address",
        re.compile(
            r"\b(?:(?:25[0-5]|2[0-4]\d|1?\d?\d)\.){3}(?:25[0-5]|2[0-4]\d|1?\d?\d)\b"
            r"|\b(?:[A-Fa-f0-9]{1,4}:){7}[A-Fa-f0-9]{1,4}\b"
        ),
        "[IP]", "IPv4 and IPv6 addresses",
    ),
    PIIPattern(
        "national_id",
        re.compile(r"\b\d{11}\b|\b\d{3}-\d{2}-\d{4}\b"),
        "[NATIONAL_ID]", "National identification numbers (PESEL, SSN)", severity="high",
    ),
    PIIPattern(
        "tax_id",
        re.compile(r"\b\d{3}-\d{3}-\d{2}-\d{2}\b|\b\d{3}-\d{2}-\d{2}-\d{3}\b"),
        "[TAX_ID]", "Tax identification numbers (NIP)", severity="high",
    ),
    PIIPattern(
        "id_document",
        re.compile(r"\b[A-Z]{3}\s?\d{6}\b|\b[A-Z]{2}\d{7}\b"),
        "[ID_DOCUMENT]", "Identity card and passport numbers", severity="high",
    ),
    PIIPattern(
        "phone",
        re.compile(
            r"(?<![\w+])(?:\+\d{1,3}[\s.-]?)?(?:\(\d{2,4}\)[\s.-]?)?"
            r"\d{3}[\s.-]?\d{3}[\s.-]?\d{3,4}(?!\w)"
        ),
        "[PHONE]", "Phone numbers",
    ),
    PIIPattern(
        "postal_code",
        re.compile(r"\b\d{2}-\d{3}\b"),
        "[POSTAL_CODE]", "Postal codes", severity="low",
    ),
    PIIPattern(
        "social_handle",
        re.compile(r"(?<![\w.])@[A-Za-z0-9_]{2,}"),
        "[HANDLE]", "Social media handles", severity="low", full_only=True,
    ),
    PIIPattern(
        "person_name",
        re.compile(rf"\b[{_UPPER}][{_LOWER}]{{2,20}}\s+[{_UPPER}][{_LOWER}]{{2,20}}\b"),
        "[NAME]", "Personal first and last names", full_only=True,
    ),
)

RECOMMENDATIONS: dict[str, list[str]] = {
    "national_id": [
        "National ID numbers are sensitive personal data - always remove",
        "Consider if age range information would suffice instead",
    ],
    "email": [
        "Use domain-only information if email trends are needed",
        "Consider hashing emails for respondent deduplication",
    ],
    "phone": ["Consider keeping only the area code for geographic analysis"],
    "person_name": ["For gender analysis, use only first names or pronouns"],
    "ip_address": ["Keep only country/region information for geographic analysis"],
}

BASE_RECOMMENDATION = "Verify that free-text questions do not invite personal details"

_STOPWORDS = frozenset(
    "a an and are as at be but by for from has have i in is it its me my not of on or "
    "so that the this to was we were with you your".split()
)
_TOKEN = re.compile(r"\w+", re.UNICODE)
_YEAR = re.compile(r"\b(19|20)\d{2}\b")
_AGE = re.compile(r"\b(\d{1,2})\s*(years? old|yo|lat|lata)\b", re.IGNORECASE)


@dataclass
class Detection:
    """Identifiers of one type found in a text."""
    type: str
    description: str
    severity: str
    matches: list[str]

    @property
    def count(self) -> int:
        return len(self.matches)


@dataclass
class AnonymizationIssue:
    severity: str  # "low" | "medium" | "high"
    description: str
    response_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "description": self.description,
            "response_index": self.response_index,
        }


@dataclass
class AnonymityGroup:
    """A group of responses that is released together."""
    members: list[int]
    representative: str

    @property
    def size(self) -> int:
        return len(self.members)

    def to_dict(self) -> dict[str, Any]:
        return {"members": self.members, "size": self.size, "representative": self.representative}


@dataclass
class AnonymizationReport:
    compliant: bool
    issues: list[AnonymizationIssue] = field(default_factory=list)
    groups: list[AnonymityGroup] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "compliant": self.compliant,
            "issues": [i.to_dict() for i in self.issues],
            "groups": [g.to_dict() for g in self.groups],
            "recommendations": self.recommendations,
        }


def _mask_match(match: str, placeholder: str, level: AnonymizationLevel) -> str:
    if level is AnonymizationLevel.PARTIAL and len(match) > PARTIAL_MASK_MIN_LENGTH:
        return f"{match[:PARTIAL_KEEP]}{placeholder}{match[-PARTIAL_KEEP:]}"
    return placeholder


def _term_vector(text: str) -> Counter:
    tokens = (t.casefold() for t in _TOKEN.findall(text or ""))
    return Counter(t for t in tokens if len(t) > 1 and t not in _STOPWORDS)


def _cosine(a: Counter, b: Counter) -> float:
    if not a or not b:
        return 0.0
    dot = sum(count * b.get(term, 0) for term, count in a.items())
    if dot == 0:
        return 0.0
    norm_a = math.sqrt(sum(v * v for v in a.values()))
    norm_b = math.sqrt(sum(v * v for v in b.values()))
    return dot / (norm_a * norm_b)


class _Cluster:
    def __init__(self, index: int, vector: Counter):
        self.members = [index]
        self.centroid = Counter(vector)

    def add(self, index: int, vector: Counter) -> None:
        self.members.append(index)
        self.centroid.update(vector)

    def absorb(self, other: "_Cluster") -> None:
        self.members = sorted(self.members + other.members)
        self.centroid.update(other.centroid)

    @property
    def first(self) -> int:
        return min(self.members)


class AnonymizationEngine:
    """
    Detects and masks identifiers and groups responses for k-anonymity.

    Masking levels:
    - none: text is left untouched
    - partial: identifier patterns masked, longer matches keep two characters
      of context on each side
    - full: identifier and name/handle patterns replaced entirely, plus
      generalization of years and ages
    """

    def __init__(self, salt: str | None = None, patterns: Iterable[PIIPattern] = PII_PATTERNS):
        self.salt = salt or secrets.token_hex(32)
        self.patterns = tuple(patterns)

    # ------------------------------------------------------------------
    # Detection and masking
    # ------------------------------------------------------------------

    def _patterns_for(self, level: AnonymizationLevel) -> list[PIIPattern]:
        if level is AnonymizationLevel.NONE:
            return []
        if level is AnonymizationLevel.FULL:
            return list(self.patterns)
        return [p for p in self.patterns if not p.full_only]

    def detect(self, text: str, level: AnonymizationLevel | None = None) -> list[Detection]:
        """
        Find identifiers in text.

        Args:
            text: Text to scan
            level: Restrict to the patterns masked at this level (default: all)
        """
        patterns = self.patterns if level is None else self._patterns_for(level)
        detections = []
        for pii in patterns:
            matches = pii.pattern.findall(text or "")
            if matches:
                # findall returns groups for grouped patterns; use full matches
                full = [m.group(0) for m in pii.pattern.finditer(text)]
                detections.append(Detection(pii.name, pii.description, pii.severity, full))
        return detections

    def detect_and_mask(self, text: str, level: AnonymizationLevel | str = AnonymizationLevel.PARTIAL) -> str:
        """Replace recognizable identifiers in text with placeholders."""
        level = AnonymizationLevel(level)
        if not text or level is AnonymizationLevel.NONE:
            return text or ""

        masked = text
        for pii in self._patterns_for(level):
            masked = pii.pattern.sub(
                lambda m, p=pii: _mask_match(m.group(0), p.placeholder, level), masked
            )

        if level is AnonymizationLevel.FULL:
            masked = self.generalize(masked)
        return masked

    def generalize(self, text: str) -> str:
        """Generalize specific years to decades and ages to ranges."""
        text = _YEAR.sub(lambda m: f"{int(m.group(0)) // 10 * 10}s", text)

        def age_range(match: re.Match) -> str:
            age = int(match.group(1))
            if age < 25:
                bucket = "18-24"
            elif age < 35:
                bucket = "25-34"
            elif age < 45:
                bucket = "35-44"
            elif age < 55:
                bucket = "45-54"
            else:
                bucket = "55+"
            return f"{bucket} {match.group(2)}"

        return _AGE.sub(age_range, text)

    def pseudonym(self, value: Any, prefix: str = "anon") -> str:
        digest = hashlib.sha256(f"{value}{self.salt}".encode("utf-8")).hexdigest()
        return f"{prefix}_{digest[:16]}"

    def anonymize_responses(
        self,
        responses: list[ResponseRecord],
        level: AnonymizationLevel | str,
    ) -> list[ResponseRecord]:
        """Mask response texts and pseudonymize string metadata values."""
        level = AnonymizationLevel(level)
        if level is AnonymizationLevel.NONE:
            return list(responses)

        anonymized = []
        for record in responses:
            metadata = {
                key: self.pseudonym(value) if isinstance(value, str) else value
                for key, value in record.respondent_metadata.items()
            }
            anonymized.append(ResponseRecord(
                text=self.detect_and_mask(record.text, level),
                respondent_metadata=metadata,
            ))
        return anonymized

    # ------------------------------------------------------------------
    # k-anonymity
    # ------------------------------------------------------------------

    def k_anonymity_group(
        self,
        texts: list[str],
        k: int,
        similarity_threshold: float = 0.3,
    ) -> tuple[list[AnonymityGroup], list[AnonymizationIssue]]:
        """
        Group responses so no group has fewer than k members.

        Responses are clustered greedily in input order: each joins the
        cluster whose centroid is most similar (cosine over term counts) if
        that similarity reaches the threshold, otherwise it starts a new
        cluster. Undersized clusters are then merged, smallest first (ties:
        earliest member), into the cluster with the nearest centroid (ties:
        larger cluster, then earliest member) until every cluster has at
        least k members or only one is left.

        Returns:
            (groups ordered by first member, issues describing every merge
            and any shortfall)
        """
        if k < 1:
            raise ValueError("k must be at least 1")

        issues: list[AnonymizationIssue] = []
        if not texts:
            return [], issues

        vectors = [_term_vector(t) for t in texts]
        clusters: list[_Cluster] = []
        for index, vector in enumerate(vectors):
            best, best_similarity = None, -1.0
            for cluster in clusters:
                similarity = _cosine(vector, cluster.centroid)
                if similarity > best_similarity:
                    best, best_similarity = cluster, similarity
            if best is not None and best_similarity >= similarity_threshold:
                best.add(index, vector)
            else:
                clusters.append(_Cluster(index, vector))

        while len(clusters) > 1:
            undersized = [c for c in clusters if len(c.members) < k]
            if not undersized:
                break
            small = min(undersized, key=lambda c: (len(c.members), c.first))
            candidates = [c for c in clusters if c is not small]
            target = max(
                candidates,
                key=lambda c: (_cosine(small.centroid, c.centroid), len(c.members), -c.first),
            )
            original_size = len(small.members)
            target.absorb(small)
            clusters.remove(small)
            issues.append(AnonymizationIssue(
                severity="medium",
                description=(
                    f"Group of {original_size} response(s) starting at #{small.first} was below "
                    f"k={k} and was merged into the group starting at #{target.first}; "
                    f"resulting size {len(target.members)}"
                ),
            ))

        if len(texts) < k:
            issues.append(AnonymizationIssue(
                severity="high",
                description=(
                    f"Only {len(texts)} response(s) available, fewer than k={k}; "
                    f"k-anonymity cannot be satisfied"
                ),
            ))

        groups = []
        for cluster in sorted(clusters, key=lambda c: c.first):
            representative = max(
                sorted(cluster.members),
                key=lambda i: (_cosine(vectors[i], cluster.centroid), -i),
            )
            groups.append(AnonymityGroup(
                members=sorted(cluster.members),
                representative=texts[representative],
            ))
        return groups, issues

    # ------------------------------------------------------------------
    # Compliance
    # ------------------------------------------------------------------

    def verify_compliance(
        self,
        texts: list[str],
        level: AnonymizationLevel | str = AnonymizationLevel.PARTIAL,
    ) -> AnonymizationReport:
        """
        Mask every text and check that no identifier survives.

        Identifiers found before masking are reported as low severity issues;
        identifiers still present after masking are high severity and make
        the report non-compliant.
        """
        level = AnonymizationLevel(level)
        issues: list[AnonymizationIssue] = []
        seen_types: set[str] = set()
        compliant = True

        for index, text in enumerate(texts):
            for detection in self.detect(text):
                seen_types.add(detection.type)
                issues.append(AnonymizationIssue(
                    severity="low",
                    description=f"Detected {detection.count} {detection.description.lower()}",
                    response_index=index,
                ))

            masked = self.detect_and_mask(text, level)
            residual_level = level if level is not AnonymizationLevel.NONE else AnonymizationLevel.PARTIAL
            for detection in self.detect(masked, residual_level):
                compliant = False
                issues.append(AnonymizationIssue(
                    severity="high",
                    description=(
                        f"{detection.count} {detection.description.lower()} "
                        f"survived {level.value} masking"
                    ),
                    response_index=index,
                ))

        recommendations: list[str] = []
        if seen_types:
            recommendations.append(BASE_RECOMMENDATION)
            for pii_type in sorted(seen_types):
                for recommendation in RECOMMENDATIONS.get(pii_type, []):
                    if recommendation not in recommendations:
                        recommendations.append(recommendation)
        if not compliant:
            recommendations.append("Use the full anonymization level before analysis")

        return AnonymizationReport(compliant=compliant, issues=issues, recommendations=recommendations)

    def build_report(
        self,
        texts: list[str],
        level: AnonymizationLevel | str,
        k: int,
        similarity_threshold: float = 0.3,
    ) -> AnonymizationReport:
        """Compliance check plus k-anonymity groups over the masked texts."""
        level = AnonymizationLevel(level)
        report = self.verify_compliance(texts, level)
        masked = [self.detect_and_mask(t, level) for t in texts]
        groups, group_issues = self.k_anonymity_group(masked, k, similarity_threshold)
        report.groups = groups
        report.issues.extend(group_issues)
        return report
