"""Icon lookup for event titles."""

from __future__ import annotations

from collections.abc import Iterable

from calmirror.models import Event, IconAssociation, IconSet


def default_icon_set() -> IconSet:
    """Starter associations offered to a freshly configured unit."""
    return IconSet(
        associations=[
            IconAssociation(
                keywords=("médecin", "docteur", "rdv"),
                icon="ic_medical",
                display_name="Médical",
            ),
            IconAssociation(
                keywords=("famille", "anniversaire"),
                icon="ic_family",
                display_name="Famille",
            ),
            IconAssociation(
                keywords=("travail", "réunion", "bureau"),
                icon="ic_work",
                display_name="Travail",
            ),
        ]
    )


def match_icon(title: str, associations: Iterable[IconAssociation]) -> IconAssociation | None:
    """Return the first association whose keywords occur in *title*."""
    for association in associations:
        if association.matches(title):
            return association
    return None


def icons_for_events(events: Iterable[Event], icon_set: IconSet) -> dict[str, str]:
    """Map event id to icon reference for every event that has a match."""
    resolved: dict[str, str] = {}
    for event in events:
        association = match_icon(event.title, icon_set.associations)
        if association is not None:
            resolved[event.id] = association.icon
    return resolved
