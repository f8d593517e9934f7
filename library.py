# Default link groups that can be probed with --link-group. Groups with the same name in
# the configuration file replace these.
LINK_GROUPS = {
    "youtube": [
        "https://www.youtube.com/",
        "https://i.ytimg.com/vi/dQw4w9WgXcQ/hqdefault.jpg",
        "https://yt3.ggpht.com/",
        "https://www.youtube.com/s/desktop/base.js",
        "https://youtubei.googleapis.com/",
    ],
    "discord": [
        "https://discord.com/",
        "https://discord.com/api/v9/experiments",
        "https://cdn.discordapp.com/",
        "https://gateway.discord.gg/",
        "https://media.discordapp.net/",
    ],
    "instagram": [
        "https://www.instagram.com/",
        "https://static.cdninstagram.com/",
        "https://scontent.cdninstagram.com/",
    ],
    "twitter": [
        "https://x.com/",
        "https://abs.twimg.com/",
        "https://pbs.twimg.com/",
        "https://video.twimg.com/",
    ],
    "facebook": [
        "https://www.facebook.com/",
        "https://static.xx.fbcdn.net/",
        "https://scontent.xx.fbcdn.net/",
    ],
    "cloudflare": [
        "https://www.cloudflare.com/",
        "https://cdnjs.cloudflare.com/",
        "https://speed.cloudflare.com/",
    ],
}


def get_link_group(name, groups=None):
    """
    Returns the links of a named group.

    Args:
        name (str): group name ("youtube")
        groups (dict, optional): groups to search; defaults to the built-in groups

    Returns:
        list: links of the group, or None if no such group exists
    """
    if groups is None:
        groups = LINK_GROUPS
    links = groups.get(name)
    if links is None:
        return None
    return list(links)
