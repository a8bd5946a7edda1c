import os

# 数据库连接
username = os.getenv("DB_USERNAME", "root")
password = os.getenv("DB_PASSWORD", "")
db_address = os.getenv("DB_ADDRESS", "127.0.0.1:3306")
db_name = os.getenv("DB_NAME", "kaung_db")

secret_key = os.getenv("SECRET_KEY", "dev")
log_level = os.getenv("LOG_LEVEL", "INFO").upper()

# 私有文件签名链接有效期（秒）
signed_url_ttl = int(os.getenv("SIGNED_URL_TTL", "3600"))

# 管理后台实时推送连接令牌有效期（秒），只在建立连接时校验
stream_token_ttl = int(os.getenv("STREAM_TOKEN_TTL", "60"))

# 管理后台新订单提示音默认开关
admin_sound_default = os.getenv("ADMIN_SOUND_DEFAULT", "1") not in ("0", "false", "False")
