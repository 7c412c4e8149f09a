"""Collection names shared by the emergency services."""

EMERGENCIES = 'emergencies'
GROUPS = 'groups'
USERS = 'users'
# Group roster entries, one per (group, member); see MemberLocation.document_id
LOCATIONS = 'locations'
INBOX = 'inbox'
