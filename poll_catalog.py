"""Static poll definitions for the CHAAT naming event."""

BUSINESS_NAME = "businessName"
TAGLINES = "taglines"

# Options are tuples so nothing can reorder them after startup; vote indexes depend on it.
POLLS = {
    BUSINESS_NAME: {
        "id": BUSINESS_NAME,
        "title": "Select a name for our business",
        "description": "Vote for the best business name",
        "options": ("Local CHAAT", "The Local CHAAT HOUSE", "CHAAT MASTI"),
    },
    TAGLINES: {
        "id": TAGLINES,
        "title": "Select a tagline",
        "description": "Vote for the best tagline",
        "options": (
            "PANIPURI and More",
            "Paniprui and Beyond",
            "Feels like Desi",
            "with local flavors",
            "pakka original",
            "crave for more",
        ),
    },
}


def get_poll(poll_id):
    """Returns a JSON-ready copy of the poll, or None if the id is unknown."""
    poll = POLLS.get(poll_id)
    if poll is None:
        return None
    return {**poll, "options": list(poll["options"])}


def get_options(poll_id):
    return POLLS[poll_id]["options"]
