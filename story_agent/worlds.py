# story_agent/worlds.py

"""Static world lore and the selectable story beginnings."""

from typing import Any, Dict, List, Optional

DEFAULT_WORLD_CARD: Dict[str, Any] = {
    "type": "world",
    "name": "Eirath Core Lore",
    "description": "Immutable world foundations: races, cultures, cosmology.",
    "data": {
        "races": {
            "Human": {
                "lifespan": "~80 years",
                "traits": ["adaptable", "ambitious"],
                "culture": "Diverse city-states; festivals mark trade seasons.",
            },
            "Elf": {
                "lifespan": "immortal until crowned monarchs",
                "traits": ["attuned to magic", "patient"],
                "culture": "Art bound to memory; monarchs age rapidly, shaping succession myths.",
            },
            "Dwarf": {
                "lifespan": "~200 years",
                "traits": ["stubborn", "craft-bound"],
                "culture": "Guild clans; oaths carry legal weight across holds.",
            },
            "Halfling": {
                "lifespan": "~100 years",
                "traits": ["cheerful", "resourceful"],
                "culture": "Market-faring caravans; hospitality is sacred.",
            },
            "Dragonborn": {
                "lifespan": "~70 years",
                "traits": ["proud", "oathbound"],
                "culture": "Clan creeds; ancestral breathlines honored in rites.",
            },
            "Gnome": {
                "lifespan": "~350 years",
                "traits": ["inquisitive", "tinkerers"],
                "culture": "Workshops under willows; inventions double as folk art.",
            },
            "Half-Elf": {
                "lifespan": "~120 years",
                "traits": ["bridge-born", "adaptable"],
                "culture": "Go-betweens in courts; multilingual diplomacy traditions.",
            },
            "Half-Orc": {
                "lifespan": "~75 years",
                "traits": ["resilient", "honor-bound"],
                "culture": "Warband codes turned civic charters in frontier towns.",
            },
            "Tiefling": {
                "lifespan": "humanlike",
                "traits": ["fiend-touched", "resilient"],
                "culture": "Diasporic enclaves; reputations negotiated via favor-debts.",
            },
            "Other": {
                "lifespan": "varies",
                "traits": ["mysterious"],
                "culture": "To be defined per story.",
            },
        },
        "calendars": {
            "major_holidays": [
                "Last Ember (year's turning)",
                "First Sowing (spring pledge)",
                "Veil Night (ancestral remembrance)",
            ],
        },
        "religions": [
            "The Octave (eight domains of virtue)",
            "The Tide (sea pact cults)",
        ],
        "magic": {
            "sources": ["ley-lines", "oaths", "bloodline relics"],
            "taboos": ["binding true names"],
        },
        "politics_template": {
            "blocs": ["Guild Compact", "Wardens' League", "Night Veil"],
            "notes": "Templates only; actual alliances are generated per session.",
        },
    },
}

WORLDS: Dict[str, Dict[str, Any]] = {
    "eirath": DEFAULT_WORLD_CARD,
}

BEGINNINGS: Dict[str, Dict[str, Any]] = {
    "combat": {
        "title": "Crucible of Steel",
        "description": (
            "Steel flashes and divine intent hangs in the air. You arrive mid-conflict, already "
            "bound to a fate someone else set in motion, with instincts that feel half-remembered "
            "from another life."
        ),
        "seed": {
            "story": [
                {
                    "type": "story",
                    "name": "Conflict Zone",
                    "description": (
                        "A borderland where skirmishes blur into holy war and grudges span "
                        "generations. Something here has been waiting specifically for you."
                    ),
                    "data": {
                        "hooks": ["ambush at dawn", "beast on the loose", "mysterious patron watching"],
                        "omens": [
                            "cold iron humming near you",
                            "unfamiliar sigil burning behind your eyes",
                        ],
                        "systemTags": ["combat_tutorial", "blessing_lock"],
                    },
                },
                {
                    "type": "environment",
                    "name": "Battleground",
                    "description": (
                        "Constrained terrain littered with fallen standards, shattered wards, and "
                        "half-buried relics that react faintly to your presence."
                    ),
                    "data": {
                        "features": ["cover", "elevation", "flammables"],
                        "hazards": ["unstable ward-glyphs", "stray projectiles"],
                        "lore": ["old dueling grounds repurposed for a secret war"],
                    },
                },
            ],
        },
    },
    "romance": {
        "title": "Academy of Hearts",
        "description": (
            "Whispers coil through marble halls where duels and declarations share the same stage. "
            "You surface into a life already enrolled, with relationships, rumors, and expectations "
            "you never agreed to."
        ),
        "seed": {
            "story": [
                {
                    "type": "story",
                    "name": "Moonspire Academy",
                    "description": (
                        "An elite academy where magic, swordplay, and politics are graded together, "
                        "and some faculty seem to recognize you from a destiny you don't remember "
                        "choosing."
                    ),
                    "data": {
                        "hooks": ["forbidden club", "faculty intrigue", "mismatched dorm assignment"],
                        "socialWeb": [
                            "childhood friend who remembers you",
                            "rival who insists you wronged them",
                        ],
                        "systemTags": ["social_tutorial", "favor_reputation"],
                    },
                },
                {
                    "type": "environment",
                    "name": "Grand Quadrangle",
                    "description": (
                        "Dorms, lecture halls, and dueling circles converge beneath floating lanterns "
                        "and watchful gargoyles that track every promise you make."
                    ),
                    "data": {
                        "events": ["masquerade", "exams week", "dueling festival"],
                        "secrets": ["sealed garden only opens for summoned souls"],
                    },
                },
            ],
        },
    },
    "politics": {
        "title": "Crown and Shadow",
        "description": (
            "Courts, war rooms, and back alleys where a single choice can tilt kingdoms. You step "
            "into a role someone else abandoned: a mask, a title, or a body with oaths already "
            "attached."
        ),
        "seed": {
            "story": [
                {
                    "type": "story",
                    "name": "Border Marches",
                    "description": (
                        "Two rival blocs contest a vital trade route that also hides the scars of "
                        "older, stranger wars. Your arrival quietly completes a pattern in their "
                        "prophecies."
                    ),
                    "data": {
                        "factions": ["Guild Compact", "Wardens' League"],
                        "hooks": ["grain shortage", "sabotaged envoy", "missing royal 'you' replaced"],
                        "systemTags": ["reputation_matrix", "hidden_alignment"],
                    },
                },
                {
                    "type": "environment",
                    "name": "Council Hall",
                    "description": (
                        "Marble, banners, and tense guard lines etched with oaths that flare at lies. "
                        "Somewhere in the architecture, a sigil reacts only to your presence."
                    ),
                    "data": {
                        "protocols": ["immunity", "oath-binding"],
                        "factionsPresent": ["royal envoys", "shadow emissaries"],
                        "lore": ["council chamber built atop an older summoning circle"],
                    },
                },
            ],
        },
    },
    "exploration": {
        "title": "Chart the Unknown",
        "description": (
            "Salt wind, secret maps, and the pull of uncharted horizons. You awaken mid-voyage with "
            "the uncanny sense that the sea already knows you, and is keeping score."
        ),
        "seed": {
            "story": [
                {
                    "type": "story",
                    "name": "Sable Gull (Cutter)",
                    "description": (
                        "A fast, battle-scarred cutter bound for the Shattered Shoals, crewed by "
                        "people who swear they've seen you in dreams or omens before."
                    ),
                    "data": {
                        "hooks": ["mutiny brewing", "map fragment", "crew superstition about you"],
                        "systemTags": ["exploration_track", "hidden_class_unlock"],
                    },
                },
                {
                    "type": "environment",
                    "name": "Stormdeck",
                    "description": (
                        "Slick planks, roaring sail, watchful eyes, and storm-sigils burned into the "
                        "mast that pulse faintly when you grip the railing."
                    ),
                    "data": {
                        "hazards": ["rigging", "squalls", "rogue wave"],
                        "omens": [
                            "distant bell only you hear",
                            "constellation that shifts when you look away",
                        ],
                    },
                },
            ],
        },
    },
}


def get_world_card(world_key: Optional[str] = None) -> Dict[str, Any]:
    if world_key and world_key in WORLDS:
        return WORLDS[world_key]
    return DEFAULT_WORLD_CARD


def list_beginnings() -> List[Dict[str, str]]:
    return [
        {"key": key, "title": value["title"], "description": value["description"]}
        for key, value in BEGINNINGS.items()
    ]


def list_worlds() -> List[Dict[str, str]]:
    return [{"key": key, "title": key} for key in WORLDS]
