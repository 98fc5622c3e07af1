"""Marketplace contract ABI (the entry points this core calls)."""

PROPERTY_STRUCT_COMPONENTS = [
    {"name": "productID", "type": "uint256"},
    {"name": "owner", "type": "address"},
    {"name": "price", "type": "uint256"},
    {"name": "propertyTitle", "type": "string"},
    {"name": "category", "type": "string"},
    {"name": "images", "type": "string[]"},
    {"name": "location", "type": "string[]"},
    {"name": "documents", "type": "string[]"},
    {"name": "description", "type": "string"},
    {"name": "nftId", "type": "string"},
    {"name": "isListed", "type": "bool"},
]

MARKETPLACE_ABI = [
    {
        "inputs": [],
        "name": "propertyIndex",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "FetchProperties",
        "outputs": [
            {
                "name": "",
                "type": "tuple[]",
                "components": PROPERTY_STRUCT_COMPONENTS,
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "productID", "type": "uint256"},
            {"name": "buyer", "type": "address"},
        ],
        "name": "PurchaseProperty",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    },
]

# Number of fields in the property struct; shorter tuples are skipped
PROPERTY_STRUCT_LENGTH = len(PROPERTY_STRUCT_COMPONENTS)
