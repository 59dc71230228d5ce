from dotenv import load_dotenv
import os

# Utils
from utils.log_utils import LogUtil

"""
Utility class for environment variables
"""
class EnvironmentUtils:
    def __init__(self, log_util: LogUtil):

        # Load environment variables
        load_dotenv()

        # Initialize logger
        self.log_util = log_util

        # Environment variables
        self.env_variables = {
            "APP_ENV": os.getenv("APP_ENV", "production"),
            "HOST": os.getenv("HOST", "0.0.0.0"),
            "PORT": int(os.getenv("PORT", "8018")),
            "ORG_ID": os.getenv("ORG_ID", "interflow"),
            "LOKI_URL": os.getenv("LOKI_URL", ""),
            "MONGO_USERNAME": os.getenv("MONGO_USERNAME", "flowservice"),
            "MONGO_PASSWORD": os.getenv("MONGO_PASSWORD", ""),
            "MONGO_AUTH_SOURCE": os.getenv("MONGO_AUTH_SOURCE", "admin"),
            "MONGO_HOST": os.getenv("MONGO_HOST", "localhost"),
            "MONGO_PORT": int(os.getenv("MONGO_PORT", "27017")),
            "MONGO_DB_NAME": os.getenv("MONGO_DB_NAME", "flow_db"),
            "CHANNEL_SERVICE_URL": os.getenv("CHANNEL_SERVICE_URL", "http://localhost:8017/channel/send-message"),
            "AGENT_SERVICE_URL": os.getenv("AGENT_SERVICE_URL", "http://localhost:8030/agent/respond"),
            "OPENAI_API_URL": os.getenv("OPENAI_API_URL", "https://api.openai.com/v1"),
            "OPENAI_API_KEY": os.getenv("OPENAI_API_KEY", ""),
            "DEBOUNCE_SECONDS": int(os.getenv("DEBOUNCE_SECONDS", "3")),
            "SCHEDULER_INTERVAL_SECONDS": int(os.getenv("SCHEDULER_INTERVAL_SECONDS", "2")),
            "CHAT_LOCK_TTL_SECONDS": int(os.getenv("CHAT_LOCK_TTL_SECONDS", "30")),
            "STALLED_SESSION_SECONDS": int(os.getenv("STALLED_SESSION_SECONDS", "60")),
            "MAX_STEPS_PER_RUN": int(os.getenv("MAX_STEPS_PER_RUN", "100")),
            "HTTP_REQUEST_TIMEOUT_SECONDS": int(os.getenv("HTTP_REQUEST_TIMEOUT_SECONDS", "15")),
            "DEBUG": os.getenv("DEBUG", "false"),
        }

    def get_env_variable(self, variable_name: str) -> str | int:
        if variable_name not in self.env_variables:
            self.log_util.error(service_name="EnvironmentUtils", message=f"Environment variable {variable_name} not found")
            raise ValueError(f"Environment variable {variable_name} not found")
        return self.env_variables[variable_name]
