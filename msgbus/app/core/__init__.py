SERVICE_NAME = "msgbus"
