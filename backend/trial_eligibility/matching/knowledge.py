"""
Medical Knowledge Resolver

Static reference tables for drug classification and medical-term synonyms,
plus the lookups the matching cascade needs:

- class_of / aliases_of / belongs_to_class for drug names
- synonyms_of for condition terms (closure over every synonym group
  containing the term)

Tables are loaded once and treated as read-only. The only mutation path is
`register_drug`, used when an admin approves a pending review; it rebuilds
the lookup indices through `reload()`.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Tuple
from dataclasses import dataclass, field
from datetime import datetime

logger = logging.getLogger(__name__)


# =============================================================================
# REFERENCE TABLES
# =============================================================================

@dataclass(frozen=True)
class DrugInfo:
    """Canonical drug entry."""
    name: str
    drug_class: str
    drug_type: str = "small_molecule"
    is_biologic: bool = False
    aliases: Tuple[str, ...] = ()
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    ai_suggested: bool = False

    @property
    def all_names(self) -> Tuple[str, ...]:
        return (self.name,) + tuple(a for a in self.aliases if a != self.name)


def _drug(name: str, drug_class: str, *aliases: str, biologic: bool = False) -> DrugInfo:
    return DrugInfo(
        name=name,
        drug_class=drug_class,
        drug_type="biologic" if biologic else "small_molecule",
        is_biologic=biologic,
        aliases=tuple(aliases),
    )


@dataclass
class MedicalKnowledge:
    """
    Dictionaries backing the resolver. Drug entries are keyed by canonical
    (generic) name; brand names and codes live in the alias tuple.
    """

    drugs: Dict[str, DrugInfo] = field(default_factory=lambda: {d.name: d for d in [
        # TNF inhibitors
        _drug("adalimumab", "TNF_inhibitors", "humira", biologic=True),
        _drug("etanercept", "TNF_inhibitors", "enbrel", biologic=True),
        _drug("infliximab", "TNF_inhibitors", "remicade", biologic=True),
        _drug("golimumab", "TNF_inhibitors", "simponi", biologic=True),
        _drug("certolizumab", "TNF_inhibitors", "cimzia", "certolizumab pegol", biologic=True),
        # IL-17 inhibitors
        _drug("secukinumab", "IL17_inhibitors", "cosentyx", biologic=True),
        _drug("ixekizumab", "IL17_inhibitors", "taltz", biologic=True),
        _drug("brodalumab", "IL17_inhibitors", "siliq", biologic=True),
        _drug("bimekizumab", "IL17_inhibitors", "bimzelx", biologic=True),
        # IL-23 inhibitors
        _drug("guselkumab", "IL23_inhibitors", "tremfya", biologic=True),
        _drug("risankizumab", "IL23_inhibitors", "skyrizi", biologic=True),
        _drug("tildrakizumab", "IL23_inhibitors", "ilumya", biologic=True),
        # IL-12/23 inhibitors
        _drug("ustekinumab", "IL12_23_inhibitors", "stelara", biologic=True),
        # Small molecules
        _drug("deucravacitinib", "TYK2_inhibitors", "sotyktu"),
        _drug("tofacitinib", "JAK_inhibitors", "xeljanz"),
        _drug("upadacitinib", "JAK_inhibitors", "rinvoq"),
        _drug("baricitinib", "JAK_inhibitors", "olumiant"),
        _drug("apremilast", "PDE4_inhibitors", "otezla"),
        _drug("roflumilast", "PDE4_inhibitors", "zoryve"),
        _drug("methotrexate", "systemic_immunosuppressants", "mtx", "trexall", "rheumatrex"),
        _drug("cyclosporine", "systemic_immunosuppressants", "neoral", "sandimmune", "cyclosporin"),
        _drug("azathioprine", "systemic_immunosuppressants", "imuran"),
        _drug("piclidenoson", "A3_adenosine_receptor_agonists", "cf101", "cf-101"),
        _drug("acitretin", "retinoids", "soriatane"),
        _drug("prednisone", "systemic_corticosteroids", "deltasone"),
        _drug("prednisolone", "systemic_corticosteroids", "prelone"),
    ]})

    # Each group is one equivalence set of condition terms
    synonym_groups: List[Tuple[str, ...]] = field(default_factory=lambda: [
        ("depression", "major depressive disorder", "clinical depression", "depressive episode", "mdd"),
        ("heart failure", "cardiac insufficiency", "congestive heart failure", "chf", "cardiac failure"),
        ("myocardial infarction", "heart attack", "mi", "cardiac infarction", "ami", "acute mi"),
        ("stroke", "cerebrovascular accident", "cva", "brain attack", "cerebral infarction"),
        ("diabetes", "diabetes mellitus", "type 1 diabetes", "type 2 diabetes", "dm", "t1dm", "t2dm"),
        ("tuberculosis", "tb", "mycobacterium tuberculosis infection", "pulmonary tb"),
        ("hepatitis b", "hep b", "hbv", "hepatitis b infection", "hepatitis b virus"),
        ("hepatitis c", "hep c", "hcv", "hepatitis c infection", "hepatitis c virus"),
        ("hiv", "human immunodeficiency virus", "aids", "hiv infection"),
        ("hypertension", "high blood pressure", "htn", "elevated blood pressure"),
        ("hyperlipidemia", "high cholesterol", "dyslipidemia", "elevated lipids"),
        ("cancer", "malignancy", "malignant tumor", "malignant neoplasm", "carcinoma"),
        ("psoriasis", "plaque psoriasis", "psoriatic disease", "psoriasis vulgaris"),
        ("psoriatic arthritis", "psa", "arthritis psoriatica"),
        ("rheumatoid arthritis", "ra", "rheumatoid disease"),
        ("crohn's disease", "crohns", "crohn disease", "inflammatory bowel disease", "ibd"),
        ("ulcerative colitis", "uc", "inflammatory bowel disease", "ibd"),
        ("herpes zoster", "shingles", "zoster"),
    ])

    # Keywords that identify a drug class in criterion text
    class_keywords: Dict[str, List[str]] = field(default_factory=lambda: {
        "TNF_inhibitors": ["tnf", "tumor necrosis factor", "anti-tnf", "tnf inhibitor", "tnf-alpha", "tnfα"],
        "IL17_inhibitors": ["il-17", "il17", "interleukin-17", "interleukin 17"],
        "IL23_inhibitors": ["il-23", "il23", "interleukin-23", "interleukin 23"],
        "IL12_23_inhibitors": ["il-12", "il12", "il-12/23", "interleukin-12", "interleukin 12", "il-23", "il23"],
        "TYK2_inhibitors": ["tyk2", "tyrosine kinase 2"],
        "JAK_inhibitors": ["jak", "janus kinase"],
        "PDE4_inhibitors": ["pde4", "pde-4", "phosphodiesterase-4", "phosphodiesterase 4"],
        "systemic_immunosuppressants": ["immunosuppressive", "immunosuppressant"],
        "A3_adenosine_receptor_agonists": ["a3 adenosine", "a3ar agonist"],
        "retinoids": ["retinoid"],
        "systemic_corticosteroids": ["corticosteroid", "glucocorticoid", "systemic steroid"],
    })

    # Generic class terms that apply to whole groups of drugs
    biologic_terms: List[str] = field(default_factory=lambda: [
        "biologic", "biologics", "biologic agent", "biological therapy", "biological agent",
        "biologic treatment", "biologic drug", "monoclonal antibody", "mab",
    ])
    dmard_terms: Dict[str, List[str]] = field(default_factory=lambda: {
        "biologic": ["bdmard", "dmard", "biologic dmard", "disease-modifying"],
        "conventional": ["csdmard", "dmard", "conventional dmard"],
        "targeted": ["tsdmard", "dmard", "targeted synthetic dmard"],
    })


# Drug classes offered to admins when approving a new term
DRUG_CLASSES = [
    "TNF_inhibitors",
    "IL17_inhibitors",
    "IL23_inhibitors",
    "IL12_23_inhibitors",
    "JAK_inhibitors",
    "TYK2_inhibitors",
    "PDE4_inhibitors",
    "A3_adenosine_receptor_agonists",
    "systemic_immunosuppressants",
    "systemic_corticosteroids",
    "retinoids",
    "biologic_other",
    "non_biologic_other",
    "investigational",
    "Unknown",
]

_BIOLOGIC_DMARD_CLASSES = {"TNF_inhibitors", "IL17_inhibitors", "IL23_inhibitors", "IL12_23_inhibitors"}


def normalize_term(term: Optional[str]) -> str:
    """Lowercase and collapse whitespace."""
    if not term or not isinstance(term, str):
        return ""
    return re.sub(r"\s+", " ", term).strip().lower()


def _normalize_class(name: str) -> str:
    return re.sub(r"[\s_\-/]+", "", normalize_term(name))


# =============================================================================
# RESOLVER
# =============================================================================

class KnowledgeResolver:
    """Lookups over a MedicalKnowledge instance plus any admin-approved drugs."""

    def __init__(self, knowledge: Optional[MedicalKnowledge] = None):
        self.knowledge = knowledge or MedicalKnowledge()
        self._approved: Dict[str, DrugInfo] = {}
        self._name_index: Dict[str, DrugInfo] = {}
        self._synonym_index: Dict[str, List[Tuple[str, ...]]] = {}
        self.reload()

    # -------------------------------------------------------------------------
    # INDEX MAINTENANCE
    # -------------------------------------------------------------------------

    def reload(self):
        """Rebuild lookup indices from the static tables and approved drugs."""
        name_index: Dict[str, DrugInfo] = {}
        for info in list(self.knowledge.drugs.values()) + list(self._approved.values()):
            for name in info.all_names:
                key = normalize_term(name)
                if key and key not in name_index:
                    name_index[key] = info

        synonym_index: Dict[str, List[Tuple[str, ...]]] = {}
        for group in self.knowledge.synonym_groups:
            normalized = tuple(normalize_term(t) for t in group)
            for term in normalized:
                synonym_index.setdefault(term, []).append(normalized)

        self._name_index = name_index
        self._synonym_index = synonym_index

    def invalidate(self):
        """Drop admin-approved drugs and return to the static tables."""
        self._approved.clear()
        self.reload()

    def register_drug(
        self,
        name: str,
        drug_class: str,
        is_biologic: bool = False,
        aliases: Iterable[str] = (),
        approved_by: str = "admin",
        ai_suggested: bool = False,
    ) -> DrugInfo:
        """
        Add an approved drug. Re-registering a name that is already known
        returns the existing entry unchanged.
        """
        existing = self.drug_info(name)
        if existing is not None:
            return existing

        key = normalize_term(name)
        if not key:
            raise ValueError("Drug name must not be empty")

        info = DrugInfo(
            name=key,
            drug_class=drug_class or "Unknown",
            drug_type="biologic" if is_biologic else "small_molecule",
            is_biologic=is_biologic,
            aliases=tuple(normalize_term(a) for a in aliases if normalize_term(a)),
            approved_at=datetime.utcnow(),
            approved_by=approved_by,
            ai_suggested=ai_suggested,
        )
        self._approved[key] = info
        self.reload()
        logger.info("Registered approved drug %r as %s", key, info.drug_class)
        return info

    @property
    def approved_drugs(self) -> Dict[str, DrugInfo]:
        return dict(self._approved)

    # -------------------------------------------------------------------------
    # DRUG LOOKUPS
    # -------------------------------------------------------------------------

    def drug_info(self, name: Optional[str]) -> Optional[DrugInfo]:
        return self._name_index.get(normalize_term(name))

    def is_known(self, name: Optional[str]) -> bool:
        return self.drug_info(name) is not None

    def class_of(self, name: Optional[str]) -> Optional[str]:
        info = self.drug_info(name)
        return info.drug_class if info else None

    def aliases_of(self, name: Optional[str]) -> List[str]:
        """Every name (canonical first) of the drug, or [] when unknown."""
        info = self.drug_info(name)
        if info is None:
            return []
        return [normalize_term(n) for n in info.all_names]

    def drugs_match(self, first: Optional[str], second: Optional[str]) -> bool:
        """True when both names resolve to the same canonical drug."""
        a, b = self.drug_info(first), self.drug_info(second)
        return a is not None and a is b

    def class_terms(self, name: Optional[str]) -> List[str]:
        """Terms a criterion might use to refer to this drug's class."""
        info = self.drug_info(name)
        if info is None:
            return []
        terms = [normalize_term(info.drug_class.replace("_", " "))]
        terms.extend(self.knowledge.class_keywords.get(info.drug_class, []))
        if info.is_biologic:
            terms.extend(self.knowledge.biologic_terms)
        if info.drug_class in _BIOLOGIC_DMARD_CLASSES:
            terms.extend(self.knowledge.dmard_terms["biologic"])
        elif info.drug_class == "systemic_immunosuppressants":
            terms.extend(self.knowledge.dmard_terms["conventional"])
        elif info.drug_class == "JAK_inhibitors":
            terms.extend(self.knowledge.dmard_terms["targeted"])
        return list(dict.fromkeys(terms))

    def belongs_to_class(self, name: Optional[str], drug_class: Optional[str]) -> bool:
        """Check whether a known drug falls under a class name or class keyword."""
        info = self.drug_info(name)
        wanted = normalize_term(drug_class)
        if info is None or not wanted:
            return False

        # Direct class name, ignoring separators ("TNF inhibitor" vs "TNF_inhibitors")
        own = _normalize_class(info.drug_class)
        target = _normalize_class(wanted)
        if target and (target in own or own.rstrip("s") == target.rstrip("s")):
            return True

        for term in self.class_terms(name):
            if not term:
                continue
            if len(term) <= 4:
                if re.search(rf"(?<![a-z0-9]){re.escape(term)}(?![a-z0-9])", wanted):
                    return True
            elif term in wanted:
                return True
        return False

    # -------------------------------------------------------------------------
    # SYNONYMS
    # -------------------------------------------------------------------------

    def synonyms_of(self, term: Optional[str]) -> List[str]:
        """
        The term itself followed by every member of every synonym group that
        contains it.
        """
        key = normalize_term(term)
        if not key:
            return []
        result = [key]
        for group in self._synonym_index.get(key, []):
            result.extend(group)
        return list(dict.fromkeys(result))

    def are_synonyms(self, first: Optional[str], second: Optional[str]) -> bool:
        b = normalize_term(second)
        return bool(b) and b in self.synonyms_of(first)


def direct_string_match(term: Optional[str], candidates: Optional[Iterable[Optional[str]]]) -> Optional[str]:
    """
    Return the candidate that equals the term (case and whitespace
    insensitive) or, failing that, contains it or is contained in it.
    Containment needs at least four characters on the shorter side.
    """
    key = normalize_term(term)
    if not key or not candidates:
        return None
    normalized = [(c, normalize_term(c)) for c in candidates if isinstance(c, str) and normalize_term(c)]
    for original, candidate in normalized:
        if candidate == key:
            return original
    for original, candidate in normalized:
        shorter, longer = sorted((key, candidate), key=len)
        if len(shorter) >= 4 and shorter in longer:
            return original
    return None


# Global instance
knowledge_resolver = KnowledgeResolver()
