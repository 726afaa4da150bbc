"""
Contact reconciliation engine.

Links partial contact records (email and/or phone number) into identity
clusters. Each cluster is a two-level tree: one primary contact, the oldest
member, and secondaries that point at it directly through ``linkedId``.

A call to ``reconcile`` runs four steps against one connection inside one
transaction:
1. Matcher: find contacts sharing the email or the phone number
2. Cluster resolver: pick the canonical primary, merging clusters if needed
3. Delta writer: insert a new primary or secondary when the input is new
4. Response assembler: build the public view of the final cluster
"""

import sqlite3
from typing import List, Optional, Tuple

import structlog

from db_models import Contact, ContactResponse, FinalResponse, LinkPrecedence
from db_setup import execute, now, query, transaction
from errors import InvalidInputError, InvariantViolationError, PersistenceError

logger = structlog.get_logger()


def _present(value: Optional[str]) -> Optional[str]:
    """Treat an empty string the same as an absent value."""
    if value is None or value == "":
        return None
    return value


def _placeholders(values) -> str:
    return ", ".join("?" for _ in values)


def find_contacts(conn, email: Optional[str] = None, phone: Optional[str] = None) -> List[Contact]:
    conditions = []
    params = []
    if email is not None:
        conditions.append("email = ?")
        params.append(email)
    if phone is not None:
        conditions.append("phoneNumber = ?")
        params.append(phone)
    if not conditions:
        return []

    rows = query(conn, f"""
        SELECT * FROM Contact
        WHERE {" OR ".join(conditions)}
        ORDER BY createdAt ASC, id ASC
    """, params)
    return [Contact(**row) for row in rows]


def get_cluster(conn, primary_ids) -> List[Contact]:
    """Every contact that is, or is linked to, one of ``primary_ids``."""
    ids = sorted(primary_ids)
    rows = query(conn, f"""
        SELECT * FROM Contact
        WHERE id IN ({_placeholders(ids)}) OR linkedId IN ({_placeholders(ids)})
        ORDER BY createdAt ASC, id ASC
    """, ids + ids)
    return [Contact(**row) for row in rows]


def create_contact(conn, email: Optional[str], phone: Optional[str],
                   linked_id: Optional[int] = None,
                   precedence: LinkPrecedence = LinkPrecedence.PRIMARY) -> int:
    timestamp = now()
    contact_id = execute(conn, """
        INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
        VALUES (?, ?, ?, ?, ?, ?)
    """, (phone, email, linked_id, precedence.value, timestamp, timestamp))

    logger.info(
        "Created contact",
        contact_id=contact_id,
        link_precedence=precedence.value,
        linked_id=linked_id,
    )
    return contact_id


def merge_into(conn, primary_id: int, demoted_ids: List[int]):
    """Demote ``demoted_ids`` under ``primary_id`` and re-point their secondaries.

    Both updates run on the caller's transaction so a cluster is never left
    with a two-hop link.
    """
    timestamp = now()
    execute(conn, f"""
        UPDATE Contact
        SET linkPrecedence = 'secondary', linkedId = ?, updatedAt = ?
        WHERE id IN ({_placeholders(demoted_ids)})
    """, [primary_id, timestamp] + demoted_ids)
    execute(conn, f"""
        UPDATE Contact
        SET linkedId = ?, updatedAt = ?
        WHERE linkedId IN ({_placeholders(demoted_ids)})
    """, [primary_id, timestamp] + demoted_ids)

    logger.info("Merged clusters", primary_id=primary_id, demoted_ids=demoted_ids)


def resolve_cluster(conn, matches: List[Contact]) -> Optional[Tuple[Contact, List[Contact]]]:
    """Return the canonical primary and its cluster, or None when nothing matched."""
    if not matches:
        return None

    primary_ids = set()
    for contact in matches:
        if contact.is_primary:
            primary_ids.add(contact.id)
        elif contact.linkedId is not None:
            primary_ids.add(contact.linkedId)

    cluster = get_cluster(conn, primary_ids)
    primaries = [c for c in cluster if c.is_primary]
    if not primaries:
        raise InvariantViolationError(f"No primary contact among ids {sorted(primary_ids)}")

    # cluster is ordered by (createdAt, id), so the first primary is the oldest
    canonical = primaries[0]
    demoted_ids = [c.id for c in primaries[1:]]
    if demoted_ids:
        merge_into(conn, canonical.id, demoted_ids)
        cluster = get_cluster(conn, {canonical.id})

    return canonical, cluster


def write_delta(conn, resolved: Optional[Tuple[Contact, List[Contact]]],
                email: Optional[str], phone: Optional[str]) -> int:
    """Insert at most one contact and return the id of the cluster's primary."""
    if resolved is None:
        return create_contact(conn, email, phone)

    canonical, cluster = resolved
    email_is_new = email is not None and all(c.email != email for c in cluster)
    phone_is_new = phone is not None and all(c.phoneNumber != phone for c in cluster)
    if email_is_new or phone_is_new:
        create_contact(conn, email, phone, canonical.id, LinkPrecedence.SECONDARY)
    return canonical.id


def build_response(cluster: List[Contact]) -> FinalResponse:
    primaries = [c for c in cluster if c.is_primary]
    if len(primaries) != 1:
        raise InvariantViolationError(
            f"Expected one primary contact, found {len(primaries)}"
        )
    primary = primaries[0]
    secondaries = [c for c in cluster if not c.is_primary]

    emails = []
    phone_numbers = []
    for contact in [primary] + secondaries:
        if contact.email is not None and contact.email not in emails:
            emails.append(contact.email)
        if contact.phoneNumber is not None and contact.phoneNumber not in phone_numbers:
            phone_numbers.append(contact.phoneNumber)

    return FinalResponse(
        contact=ContactResponse(
            primaryContactId=primary.id,
            emails=emails,
            phoneNumbers=phone_numbers,
            secondaryContactIds=[c.id for c in secondaries],
        )
    )


def reconcile(conn, email: Optional[str] = None, phone: Optional[str] = None) -> FinalResponse:
    """Link an observed (email, phone) pair into its cluster and return the cluster view.

    Raises:
        InvalidInputError: neither value was supplied; storage is not touched.
        PersistenceError: a storage operation failed; nothing was written.
        InvariantViolationError: the stored clusters are inconsistent.
    """
    email = _present(email)
    phone = _present(phone)
    if email is None and phone is None:
        raise InvalidInputError()

    try:
        with transaction(conn):
            matches = find_contacts(conn, email, phone)
            resolved = resolve_cluster(conn, matches)
            primary_id = write_delta(conn, resolved, email, phone)
            return build_response(get_cluster(conn, {primary_id}))
    except sqlite3.Error as e:
        logger.error("Reconciliation rolled back", error=str(e))
        raise PersistenceError(str(e)) from e
