"""
Minimal contract ABIs used by the indexer.

Only the views and writes the indexer touches are declared.
"""

_PLAYER_COMPONENTS = [
    {"name": "player", "type": "address"},
    {"name": "enrolledTs", "type": "uint256"},
    {"name": "amountWon", "type": "uint256"},
    {"name": "wonTs", "type": "uint256"},
    {"name": "refunded", "type": "bool"},
    {"name": "refundFailed", "type": "bool"},
    {"name": "refundTs", "type": "uint256"},
]

_MISSION_DATA_COMPONENTS = [
    {"name": "players", "type": "tuple[]", "components": _PLAYER_COMPONENTS},
    {"name": "missionType", "type": "uint8"},
    {"name": "missionCreated", "type": "uint256"},
    {"name": "enrollmentStart", "type": "uint256"},
    {"name": "enrollmentEnd", "type": "uint256"},
    {"name": "enrollmentAmount", "type": "uint256"},
    {"name": "enrollmentMinPlayers", "type": "uint8"},
    {"name": "enrollmentMaxPlayers", "type": "uint8"},
    {"name": "roundPauseDuration", "type": "uint256"},
    {"name": "lastRoundPauseDuration", "type": "uint256"},
    {"name": "missionStart", "type": "uint256"},
    {"name": "missionEnd", "type": "uint256"},
    {"name": "missionRounds", "type": "uint8"},
    {"name": "roundCount", "type": "uint8"},
    {"name": "ethInitial", "type": "uint256"},
    {"name": "ethStart", "type": "uint256"},
    {"name": "ethCurrent", "type": "uint256"},
    {"name": "pauseTimestamp", "type": "uint256"},
    {"name": "creator", "type": "address"},
    {"name": "allRefunded", "type": "bool"},
    {"name": "name", "type": "string"},
]

MISSION_ABI = [
    {
        "type": "function",
        "name": "getMissionData",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "tuple", "components": _MISSION_DATA_COMPONENTS}],
    },
    {
        "type": "function",
        "name": "getRealtimeStatus",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "type": "function",
        "name": "finalizeMission",
        "stateMutability": "nonpayable",
        "inputs": [],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "refundPlayers",
        "stateMutability": "nonpayable",
        "inputs": [],
        "outputs": [],
    },
]

FACTORY_ABI = [
    {
        "type": "function",
        "name": "getMissionChangesAfter",
        "stateMutability": "view",
        "inputs": [
            {"name": "afterSeq", "type": "uint256"},
            {"name": "maxItems", "type": "uint256"},
        ],
        "outputs": [
            {
                "name": "changes",
                "type": "tuple[]",
                "components": [
                    {"name": "mission", "type": "address"},
                    {"name": "timestamp", "type": "uint64"},
                    {"name": "seq", "type": "uint64"},
                    {"name": "status", "type": "uint8"},
                ],
            }
        ],
    },
]
