"""
同期設定管理システム
階層化設定ファイル（YAML）・環境変数オーバーライド・暗号化可能な秘密情報
"""

import base64
import json
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from cryptography.fernet import Fernet, InvalidToken

from ..utils.enhanced_logger import get_logger

ENV_PREFIX = "HISTORY_SYNC_"
ENCRYPTED_PREFIX = "encrypted:"
SECRET_KEYS = [
    'HISTORY_SYNC_API_TOKEN',
    'HISTORY_SYNC_ENCRYPTION_KEY',
]


@dataclass
class CacheConfig:
    """ローカルキャッシュ設定"""
    database_path: str = "data/history.db"
    cap: int = 49


@dataclass
class RemoteConfig:
    """リモートAPI設定"""
    base_url: str = "http://localhost:3000"
    timeout_seconds: float = 15.0
    page_limit: int = 20
    session_id: Optional[str] = None


@dataclass
class RetryConfig:
    """リトライ設定"""
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    max_attempts: Optional[int] = None


@dataclass
class SchedulerConfig:
    """定期同期設定"""
    enabled: bool = True
    interval_seconds: float = 30.0
    online_delay_seconds: float = 1.0


@dataclass
class LoggingConfig:
    """ログ設定"""
    level: str = "INFO"
    file_path: Optional[str] = None
    metrics_enabled: bool = True


@dataclass
class SyncConfig:
    """同期設定メインクラス"""
    cache: CacheConfig = field(default_factory=CacheConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    user_id: str = "default"
    environment: str = "development"
    debug: bool = False

    # 秘密情報（設定ファイルには書かない）
    api_token: Optional[str] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop('api_token', None)
        return data


SECTION_TYPES = {
    'cache': CacheConfig,
    'remote': RemoteConfig,
    'retry': RetryConfig,
    'scheduler': SchedulerConfig,
    'logging': LoggingConfig,
}


def _to_bool(value: str) -> bool:
    return value.lower() in ['true', '1', 'yes']


def _to_optional_int(value: str) -> Optional[int]:
    return int(value) if value else None


ENV_OVERRIDES = {
    'HISTORY_SYNC_USER_ID': ('user_id', str),
    'HISTORY_SYNC_ENVIRONMENT': ('environment', str),
    'HISTORY_SYNC_DEBUG': ('debug', _to_bool),
    'HISTORY_SYNC_DATABASE_PATH': ('cache.database_path', str),
    'HISTORY_SYNC_CACHE_CAP': ('cache.cap', int),
    'HISTORY_SYNC_BASE_URL': ('remote.base_url', str),
    'HISTORY_SYNC_TIMEOUT_SECONDS': ('remote.timeout_seconds', float),
    'HISTORY_SYNC_PAGE_LIMIT': ('remote.page_limit', int),
    'HISTORY_SYNC_SESSION_ID': ('remote.session_id', str),
    'HISTORY_SYNC_MAX_ATTEMPTS': ('retry.max_attempts', _to_optional_int),
    'HISTORY_SYNC_INTERVAL_SECONDS': ('scheduler.interval_seconds', float),
    'HISTORY_SYNC_SCHEDULER_ENABLED': ('scheduler.enabled', _to_bool),
    'HISTORY_SYNC_LOG_LEVEL': ('logging.level', str),
    'HISTORY_SYNC_LOG_FILE': ('logging.file_path', str),
}


class SecurityManager:
    """秘密情報の暗号化・復号化"""

    def __init__(self, encryption_key: Optional[str] = None):
        self.encryption_key = encryption_key or os.getenv('HISTORY_SYNC_ENCRYPTION_KEY')
        self.cipher = Fernet(self.encryption_key.encode()) if self.encryption_key else None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt_value(self, value: str) -> str:
        """値の暗号化"""
        if not self.cipher:
            raise ValueError("No encryption key configured (HISTORY_SYNC_ENCRYPTION_KEY)")
        encrypted = self.cipher.encrypt(value.encode())
        return base64.urlsafe_b64encode(encrypted).decode()

    def decrypt_value(self, encrypted_value: str) -> str:
        """値の復号化"""
        if not self.cipher:
            raise ValueError("No encryption key configured (HISTORY_SYNC_ENCRYPTION_KEY)")
        decoded = base64.urlsafe_b64decode(encrypted_value.encode())
        return self.cipher.decrypt(decoded).decode()


class ConfigManager:
    """設定管理メインクラス"""

    def __init__(self,
                 config_dir: Union[str, Path] = "config",
                 secrets_dir: Optional[Union[str, Path]] = None,
                 security_manager: Optional[SecurityManager] = None):

        self.config_dir = Path(config_dir)
        self.secrets_dir = Path(secrets_dir) if secrets_dir else self.config_dir / "secrets"
        self.security_manager = security_manager

        # キャッシュされた設定
        self._config_cache: Optional[SyncConfig] = None
        self._secrets_cache: Dict[str, Any] = {}

    def load_config(self, reload: bool = False) -> SyncConfig:
        """設定の読み込み"""
        if self._config_cache and not reload:
            return self._config_cache

        # メイン設定 + 同期設定ファイル（後者が優先）
        main_config = self._load_yaml_file(self.config_dir / "main.yaml")
        sync_config = self._load_yaml_file(self.config_dir / "sync.yaml")
        merged_config = self._merge_configs(main_config, sync_config)

        # 環境変数によるオーバーライド
        merged_config = self._apply_env_overrides(merged_config)

        config = self._create_config_object(merged_config)
        config.api_token = self.load_secrets(reload).get('HISTORY_SYNC_API_TOKEN')
        self._config_cache = config

        get_logger().info(
            "Configuration loaded successfully",
            environment=config.environment,
            base_url=config.remote.base_url,
            operation="config_load"
        )
        return config

    def load_secrets(self, reload: bool = False) -> Dict[str, Any]:
        """秘密情報の読み込み（優先順位: 環境変数 > .env > JSON）"""
        if self._secrets_cache and not reload:
            return self._secrets_cache

        self._secrets_cache = {
            **self._load_json_secrets(),
            **self._load_env_file(),
            **self._load_env_secrets(),
        }
        self._decrypt_secrets()

        get_logger().debug(
            "Secrets loaded",
            secret_count=len(self._secrets_cache),
            operation="secrets_load"
        )
        return self._secrets_cache

    def _load_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        """YAMLファイルの読み込み"""
        if not file_path.exists():
            get_logger().debug(f"Config file not found: {file_path}")
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            get_logger().warning(f"Failed to load YAML file, using defaults: {file_path}", error_message=str(e))
            return {}

        if not isinstance(data, dict):
            get_logger().warning(f"Ignoring config file without a mapping at top level: {file_path}")
            return {}
        return data

    def _load_env_secrets(self) -> Dict[str, str]:
        """環境変数からの秘密情報読み込み"""
        return {key: os.getenv(key) for key in SECRET_KEYS if os.getenv(key)}

    def _load_env_file(self) -> Dict[str, str]:
        """.envファイルからの読み込み"""
        env_file = self.secrets_dir / ".env"
        if not env_file.exists():
            return {}

        secrets = {}
        try:
            with open(env_file, 'r', encoding='utf-8') as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith('#') and '=' in line:
                        key, value = line.split('=', 1)
                        secrets[key.strip()] = value.strip().strip('"\'')
        except OSError as e:
            get_logger().warning(f"Failed to load .env file: {env_file}", error_message=str(e))

        return secrets

    def _load_json_secrets(self) -> Dict[str, Any]:
        """JSONファイルからの読み込み"""
        file_path = self.secrets_dir / "secrets.json"
        if not file_path.exists():
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            get_logger().warning(f"Failed to load JSON secrets: {file_path}", error_message=str(e))
            return {}
        return data if isinstance(data, dict) else {}

    def _decrypt_secrets(self):
        """暗号化された秘密情報の復号化"""
        for key, value in list(self._secrets_cache.items()):
            if not (isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX)):
                continue

            if self.security_manager is None:
                self.security_manager = SecurityManager(self._secrets_cache.get('HISTORY_SYNC_ENCRYPTION_KEY'))
            try:
                self._secrets_cache[key] = self.security_manager.decrypt_value(value[len(ENCRYPTED_PREFIX):])
            except (InvalidToken, ValueError) as e:
                get_logger().error(f"Failed to decrypt secret {key}, ignoring it", error=e)
                self._secrets_cache.pop(key)

    def _merge_configs(self, base: Dict, override: Dict) -> Dict:
        """設定の統合（セクション単位でマージ）"""
        merged = dict(base)
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key] = {**merged[key], **value}
            else:
                merged[key] = value
        return merged

    def _apply_env_overrides(self, config: Dict) -> Dict:
        """環境変数によるオーバーライド"""
        for env_key, (config_path, converter) in ENV_OVERRIDES.items():
            env_value = os.getenv(env_key)
            if env_value is None or env_value == '':
                continue
            try:
                converted_value = converter(env_value)
            except ValueError as e:
                get_logger().warning(f"Failed to apply env override {env_key}", error_message=str(e))
                continue
            self._set_nested_value(config, config_path, converted_value)

        return config

    def _set_nested_value(self, config: Dict, path: str, value: Any):
        """ネストされた設定値の設定"""
        keys = path.split('.')
        current = config

        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _create_config_object(self, config_dict: Dict) -> SyncConfig:
        """設定辞書から設定オブジェクトを作成（未知のキーは警告して無視）"""
        kwargs: Dict[str, Any] = {}
        top_level = {f.name for f in fields(SyncConfig)} - {'api_token'}

        for key, value in config_dict.items():
            if key in SECTION_TYPES:
                section_type = SECTION_TYPES[key]
                if not isinstance(value, dict):
                    get_logger().warning(f"Config section '{key}' must be a mapping, using defaults")
                    continue
                known = {f.name for f in fields(section_type)}
                unknown = set(value) - known
                if unknown:
                    get_logger().warning(f"Ignoring unknown keys in '{key}': {sorted(unknown)}")
                kwargs[key] = section_type(**{k: v for k, v in value.items() if k in known})
            elif key in top_level:
                kwargs[key] = value
            else:
                get_logger().warning(f"Ignoring unknown config key: {key}")

        return SyncConfig(**kwargs)

    def save_config_template(self):
        """設定ファイルテンプレートの作成"""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        templates = {
            "main.yaml": {
                "environment": "development",
                "debug": False,
                "user_id": "default",
                "logging": asdict(LoggingConfig(file_path="logs/history_sync.log")),
            },
            "sync.yaml": {
                "cache": asdict(CacheConfig()),
                "remote": asdict(RemoteConfig()),
                "retry": asdict(RetryConfig()),
                "scheduler": asdict(SchedulerConfig()),
            },
        }

        for filename, template in templates.items():
            file_path = self.config_dir / filename
            if file_path.exists():
                continue
            with open(file_path, 'w', encoding='utf-8') as f:
                yaml.dump(template, f, default_flow_style=False, allow_unicode=True)
            get_logger().info(f"Created config template: {filename}")

