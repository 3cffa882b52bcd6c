"""Location module manifest — tool definitions."""

from shared.schemas.tools import ModuleManifest, ToolDefinition, ToolParameter

MANIFEST = ModuleManifest(
    module_name="location",
    description=(
        "Last Seen: manually share a single current spot with your circle. "
        "Spots expire automatically, can be blurred (vague mode), and are only "
        "visible under the circle's privacy policy. There is no background tracking."
    ),
    tools=[
        ToolDefinition(
            name="location.get_circle",
            description="Refresh and list every spot currently visible to the user, plus their own spot and whether it is stale.",
            parameters=[],
            required_permission="user",
        ),
        ToolDefinition(
            name="location.log_location",
            description=(
                "Log the user's current spot. Creates their record on first use and "
                "updates it in place afterwards. The place label is resolved on a "
                "best-effort basis."
            ),
            parameters=[
                ToolParameter(
                    name="lat",
                    type="number",
                    description="Latitude of the device fix",
                ),
                ToolParameter(
                    name="lng",
                    type="number",
                    description="Longitude of the device fix",
                ),
                ToolParameter(
                    name="note",
                    type="string",
                    description='Short status, e.g. "grabbing coffee" (max 140 characters)',
                    required=False,
                ),
                ToolParameter(
                    name="expiry_minutes",
                    type="integer",
                    description="Minutes until the spot disappears (omit or 0 to never expire)",
                    required=False,
                ),
                ToolParameter(
                    name="visibility_mode",
                    type="string",
                    description='Audience: "public" (default), "unlisted", "connectionsOnly", or "vague"',
                    required=False,
                    enum=["public", "unlisted", "connectionsOnly", "vague"],
                ),
                ToolParameter(
                    name="vague",
                    type="boolean",
                    description="Blur the spot by up to ~500 m; combines with any audience",
                    required=False,
                ),
            ],
            required_permission="user",
        ),
        ToolDefinition(
            name="location.stop_sharing",
            description="Delete the user's spot so nobody sees it any more.",
            parameters=[],
            required_permission="user",
        ),
        ToolDefinition(
            name="location.list_connections",
            description="List the people whose spots the user has chosen to see.",
            parameters=[],
            required_permission="user",
        ),
        ToolDefinition(
            name="location.add_connection",
            description=(
                "Add a connection by email. One-directional: the user starts seeing "
                "the other person's spot; the other person must add them back to see theirs."
            ),
            parameters=[
                ToolParameter(
                    name="email",
                    type="string",
                    description="Email address the other person registered with",
                ),
            ],
            required_permission="user",
        ),
        ToolDefinition(
            name="location.remove_connection",
            description="Stop seeing a connection's spot.",
            parameters=[
                ToolParameter(
                    name="connection_id",
                    type="string",
                    description="User id of the connection to remove",
                ),
            ],
            required_permission="user",
        ),
        ToolDefinition(
            name="location.enable_public_share",
            description=(
                "Create or rotate the user's public share link. Anyone holding the "
                "link can see the user's latest live spot without signing in."
            ),
            parameters=[],
            required_permission="user",
        ),
        ToolDefinition(
            name="location.disable_public_share",
            description="Disable the public share link; old links stop working immediately.",
            parameters=[],
            required_permission="user",
        ),
    ],
)
