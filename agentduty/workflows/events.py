NOTIFICATION_CREATED = "notification/created"
NOTIFICATION_RESPONDED = "notification/responded"

NOTIFICATION_ID_FIELD = "notification_id"
