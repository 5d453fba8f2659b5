import logging
from collections import Counter, defaultdict
from decimal import Decimal, ROUND_HALF_UP
from itertools import combinations
from math import ceil

from django.db import transaction
from django.utils import timezone

from common.exceptions import BusinessRuleViolation
from common.utils import local_day_bounds
from sales.models import ProductRecommendation, Sale, SaleLine

logger = logging.getLogger(__name__)

RATIO_QUANT = Decimal("0.0001")

CONFIDENCE_LEVELS = (
    (Decimal("0.8"), "Very high"),
    (Decimal("0.6"), "High"),
    (Decimal("0.4"), "Medium"),
    (Decimal("0.2"), "Low"),
)


def _ratio(value):
    return value.quantize(RATIO_QUANT, rounding=ROUND_HALF_UP)


def confidence_level(score):
    for threshold, label in CONFIDENCE_LEVELS:
        if score >= threshold:
            return label
    return "Very low"


def mine_association_rules(baskets, min_support, min_confidence):
    """Return single-item rules ``antecedent -> consequent`` mined Apriori-style.

    ``baskets`` is a list of sets of product ids. An item or a pair is
    frequent when it appears in at least ``ceil(min_support * len(baskets))``
    baskets. Every frequent pair is tried in both directions and kept when
    ``confidence = pair / antecedent`` reaches ``min_confidence``; ``lift`` is
    confidence over the consequent's own support. Rules come back strongest
    first.
    """
    total = len(baskets)
    if not total:
        return []
    min_support = Decimal(str(min_support))
    min_confidence = Decimal(str(min_confidence))
    min_count = ceil(min_support * total)

    item_counts = Counter(item for basket in baskets for item in basket)
    frequent_items = {item for item, count in item_counts.items() if count >= min_count}
    pair_counts = Counter(
        pair for basket in baskets for pair in combinations(sorted(frequent_items & set(basket)), 2)
    )

    rules = []
    for (first, second), count in pair_counts.items():
        if count < min_count:
            continue
        support = Decimal(count) / total
        for antecedent, consequent in ((first, second), (second, first)):
            confidence = Decimal(count) / item_counts[antecedent]
            if confidence < min_confidence:
                continue
            lift = confidence / (Decimal(item_counts[consequent]) / total)
            rules.append(
                {
                    "antecedent": antecedent,
                    "consequent": consequent,
                    "support": _ratio(support),
                    "confidence": _ratio(confidence),
                    "lift": _ratio(lift),
                    "count": count,
                }
            )
    rules.sort(key=lambda rule: (-rule["confidence"], -rule["count"], -rule["lift"]))
    return rules


def sale_baskets(start, end, category=None):
    """Distinct product ids per completed sale in ``[start, end]``, keeping only baskets of two or more."""
    sales = Sale.objects.filter(status=Sale.Status.COMPLETED, sold_at__gte=start, sold_at__lte=end)
    if category is not None:
        sales = sales.filter(lines__product__category=category)

    baskets = defaultdict(set)
    for sale_id, product_id in SaleLine.objects.filter(sale__in=sales).values_list("sale_id", "product_id"):
        baskets[sale_id].add(product_id)
    return [basket for basket in baskets.values() if len(basket) >= 2]


def _rule_note(rule):
    return (
        f"Support {rule['support']:.2%}, confidence {rule['confidence']:.2%}, "
        f"lift {rule['lift']:.2f}"
    )


def generate_recommendations(*, date_from, date_to, min_support, min_confidence, category=None, actor=None):
    """Mine sale baskets for the period and upsert one recommendation per rule.

    An existing pair is only overwritten when the new confidence is higher,
    so a narrow re-run never weakens a recommendation. Raises
    ``BusinessRuleViolation`` when the period has nothing to learn from.
    """
    start = local_day_bounds(date_from)[0]
    end = local_day_bounds(date_to)[1]
    period = f"{date_from:%d/%m/%Y} - {date_to:%d/%m/%Y}"

    if not Sale.objects.filter(status=Sale.Status.COMPLETED, sold_at__gte=start, sold_at__lte=end).exists():
        raise BusinessRuleViolation(f"There are no completed sales in {period}.")

    baskets = sale_baskets(start, end, category)
    if not baskets:
        scope = f" for {category.name}" if category is not None else ""
        raise BusinessRuleViolation(
            f"No sale in {period}{scope} contains at least two different products, so there is nothing to pair."
        )

    rules = mine_association_rules(baskets, min_support, min_confidence)
    if not rules:
        raise BusinessRuleViolation(
            f"No product pair reaches support {min_support} and confidence {min_confidence} "
            f"across {len(baskets)} sales. Lower the thresholds or widen the period."
        )

    analysed_at = timezone.now()
    created = updated = 0
    with transaction.atomic():
        for rule in rules:
            recommendation = (
                ProductRecommendation.objects.select_for_update()
                .filter(product_id=rule["antecedent"], recommended_product_id=rule["consequent"])
                .first()
            )
            if recommendation is None:
                ProductRecommendation.objects.create(
                    product_id=rule["antecedent"],
                    recommended_product_id=rule["consequent"],
                    score=rule["confidence"],
                    support=rule["support"],
                    lift=rule["lift"],
                    co_occurrence=rule["count"],
                    analysed_at=analysed_at,
                    note=_rule_note(rule),
                )
                created += 1
            elif rule["confidence"] > recommendation.score:
                recommendation.score = rule["confidence"]
                recommendation.support = rule["support"]
                recommendation.lift = rule["lift"]
                recommendation.co_occurrence = rule["count"]
                recommendation.analysed_at = analysed_at
                recommendation.note = _rule_note(rule)
                recommendation.save()
                updated += 1

    logger.info(
        "recommendations_generated baskets=%s rules=%s created=%s updated=%s",
        len(baskets),
        len(rules),
        created,
        updated,
        extra={"actor_id": actor.pk if actor is not None else None},
    )
    return {
        "period": period,
        "baskets": len(baskets),
        "rules": len(rules),
        "created": created,
        "updated": updated,
    }
