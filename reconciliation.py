"""Identity reconciliation over the Contact table.

A submission goes through three stages:

1. ``find_overlaps`` loads every contact sharing the email or the phone number.
2. ``resolve`` elects the oldest primary among the identities touched and
   decides whether to create, attach, merge or promote.
3. ``apply_plan`` performs the writes in one transaction and returns the
   consolidated view of the surviving identity.

Linkage is kept as a forest of depth one: every secondary points straight
at a primary, and demoting a primary always re-points its own secondaries.
"""

import logging
from typing import Dict, List

from contact_store import ContactStore
from db_models import (
    Contact,
    ContactResponse,
    IdentifyRequest,
    LinkPrecedence,
    PlanKind,
    ResolutionPlan,
)
from errors import ContactValidationError, InconsistentDataError, StaleResolutionError

logger = logging.getLogger(__name__)


def find_overlaps(store: ContactStore, submission: IdentifyRequest) -> List[Contact]:
    return store.find_by_email_or_phone(submission.email, submission.phoneNumber)


def _root_primary(store: ContactStore, contact: Contact, fetched: Dict[int, Contact]) -> Contact:
    if contact.is_primary:
        return contact
    if contact.linkedId is None:
        raise InconsistentDataError(f"secondary contact {contact.id} has no linkedId")

    parent = fetched.get(contact.linkedId)
    if parent is None:
        parent = store.get_contact(contact.linkedId)
        if parent is not None:
            fetched[parent.id] = parent
    if parent is None or not parent.is_primary:
        raise InconsistentDataError(
            f"contact {contact.id} links to {contact.linkedId}, which is not a primary"
        )
    return parent


def _represents(contact: Contact, submission: IdentifyRequest) -> bool:
    if submission.email and contact.email != submission.email:
        return False
    if submission.phoneNumber and contact.phoneNumber != submission.phoneNumber:
        return False
    return True


def _shares_field(contact: Contact, submission: IdentifyRequest) -> bool:
    return bool(
        (submission.email and contact.email == submission.email)
        or (submission.phoneNumber and contact.phoneNumber == submission.phoneNumber)
    )


def resolve(store: ContactStore, overlaps: List[Contact], submission: IdentifyRequest) -> ResolutionPlan:
    fetched = {contact.id: contact for contact in overlaps}

    # dict keeps discovery order for the stable sort below
    primaries: Dict[int, Contact] = {}
    for contact in overlaps:
        try:
            root = _root_primary(store, contact, fetched)
        except InconsistentDataError as exc:
            logger.warning("Skipping contact %s: %s", contact.id, exc)
            continue
        primaries.setdefault(root.id, root)

    if not primaries:
        return ResolutionPlan(kind=PlanKind.CREATE_PRIMARY, submission=submission)

    ranked = sorted(primaries.values(), key=lambda c: c.createdAt)
    ultimate, others = ranked[0], ranked[1:]

    members = []
    for primary in ranked:
        members.extend(store.find_identity(primary.id))
    represented = any(_represents(member, submission) for member in members)

    if not others and represented:
        return ResolutionPlan(
            kind=PlanKind.ATTACH_OR_MERGE,
            submission=submission,
            ultimate_primary=ultimate,
            create_record=False,
        )

    if _shares_field(ultimate, submission):
        return ResolutionPlan(
            kind=PlanKind.ATTACH_OR_MERGE,
            submission=submission,
            ultimate_primary=ultimate,
            other_primaries=others,
            create_record=not represented,
        )

    return ResolutionPlan(
        kind=PlanKind.PROMOTE_NEW_PRIMARY,
        submission=submission,
        ultimate_primary=ultimate,
        other_primaries=others,
    )


def build_view(identity: List[Contact]) -> ContactResponse:
    """Consolidate a primary and its secondaries, primary first."""
    primary = identity[0]
    emails = []
    phone_numbers = []
    secondary_ids = []

    for contact in identity:
        if contact.email and contact.email not in emails:
            emails.append(contact.email)
        if contact.phoneNumber and contact.phoneNumber not in phone_numbers:
            phone_numbers.append(contact.phoneNumber)
        if contact.id != primary.id:
            secondary_ids.append(contact.id)

    return ContactResponse(
        primaryContactId=primary.id,
        emails=emails,
        phoneNumbers=phone_numbers,
        secondaryContactIds=secondary_ids,
    )


def _demote(store: ContactStore, primary_id: int, new_primary_id: int) -> None:
    store.update_linkage(primary_id, LinkPrecedence.SECONDARY, new_primary_id)
    moved = store.bulk_relink(primary_id, new_primary_id)
    logger.info(
        "Demoted primary %s under %s, re-linked %s secondaries",
        primary_id,
        new_primary_id,
        moved,
    )


def _ensure_current(store: ContactStore, plan: ResolutionPlan) -> None:
    for primary in [plan.ultimate_primary] + plan.other_primaries:
        current = store.get_contact(primary.id)
        if current is None or not current.is_primary:
            raise StaleResolutionError(f"contact {primary.id} is no longer a primary")


def _rewrite(store: ContactStore, plan: ResolutionPlan) -> ContactResponse:
    _ensure_current(store, plan)
    submission = plan.submission

    if plan.kind == PlanKind.PROMOTE_NEW_PRIMARY:
        new_primary = store.insert_contact(submission.email, submission.phoneNumber, LinkPrecedence.PRIMARY)
        root_id = new_primary.id
        logger.info("Promoted new primary %s over %s identities", root_id, len(plan.demoted))
    else:
        root_id = plan.ultimate_primary.id
        if plan.create_record:
            secondary = store.insert_contact(
                submission.email,
                submission.phoneNumber,
                LinkPrecedence.SECONDARY,
                root_id,
            )
            logger.info("Attached secondary %s to primary %s", secondary.id, root_id)

    for primary in plan.demoted:
        _demote(store, primary.id, root_id)

    return build_view(store.find_identity(root_id))


def apply_plan(store: ContactStore, plan: ResolutionPlan) -> ContactResponse:
    submission = plan.submission

    if plan.kind == PlanKind.CREATE_PRIMARY:
        contact = store.insert_contact(submission.email, submission.phoneNumber, LinkPrecedence.PRIMARY)
        logger.info("Created primary contact %s", contact.id)
        return build_view([contact])

    if not plan.has_writes:
        identity = store.find_identity(plan.ultimate_primary.id)
        if not identity or not identity[0].is_primary:
            raise StaleResolutionError(f"contact {plan.ultimate_primary.id} is no longer a primary")
        return build_view(identity)

    return store.run_atomic(lambda tx: _rewrite(tx, plan))


def identify(store: ContactStore, submission: IdentifyRequest, max_attempts: int = 3) -> ContactResponse:
    """Reconcile one (email, phoneNumber) submission and return its identity."""
    if not submission.email and not submission.phoneNumber:
        raise ContactValidationError()

    attempt = 1
    while True:
        overlaps = find_overlaps(store, submission)
        plan = resolve(store, overlaps, submission)
        try:
            return apply_plan(store, plan)
        except StaleResolutionError as exc:
            if attempt >= max_attempts:
                raise
            logger.info("Plan went stale (%s), retrying attempt %s", exc, attempt + 1)
            attempt += 1
