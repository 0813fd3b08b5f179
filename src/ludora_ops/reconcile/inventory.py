"""
ludora_ops.reconcile.inventory - 对象存储清点

列举 {env}/ 下的全部对象:
    1. 以 "/" 为分隔符列举环境根，得到一级子前缀（public/、private/ ...）与根级对象
    2. 各子前缀由有界线程池并行分页列举
    3. 系统前缀（quarantine/、.locks/）不参与清点

每一页请求都经过适配器的重试策略；任一前缀重试耗尽即抛出 StoreAnalysisError，
调用方不得把不完整的清点结果当作完整结果使用。
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Set

from .errors import ErrorCode, ObjectStoreError, StoreAnalysisError
from .keys import env_prefix, is_system_key, system_prefixes
from .models import ObjectRecord
from .object_store import ObjectStoreAdapter

logger = logging.getLogger(__name__)


class ObjectInventoryAnalyzer:
    """对象存储清点器"""

    def __init__(self, store: ObjectStoreAdapter, workers: int = 8):
        self.store = store
        self.workers = max(1, workers)

    def _top_level(self, environment: str):
        prefix = env_prefix(environment)
        records: List[ObjectRecord] = []
        prefixes: Set[str] = set()
        token: Optional[str] = None
        while True:
            page = self.store.list_page(prefix, token=token, delimiter="/")
            records.extend(page.records)
            prefixes.update(page.common_prefixes)
            if not page.next_token:
                break
            token = page.next_token
        excluded = set(system_prefixes(environment))
        return records, sorted(p for p in prefixes if p not in excluded)

    def _list_prefix(self, prefix: str) -> List[ObjectRecord]:
        return list(self.store.iter_objects(prefix))

    def analyze(self, environment: str) -> List[ObjectRecord]:
        """
        返回环境下全部对象（按 key 排序）

        Raises:
            StoreAnalysisError: 任一前缀列举失败（重试耗尽或不可重试错误）
        """
        try:
            records, prefixes = self._top_level(environment)
        except ObjectStoreError as e:
            raise StoreAnalysisError(
                f"列举 {env_prefix(environment)} 失败: {e.message}",
                {"prefix": env_prefix(environment), "reason": ErrorCode.ANALYZE_LIST_FAILED,
                 "error_type": e.error_type},
            ) from e

        by_key: Dict[str, ObjectRecord] = {r.key: r for r in records}
        if prefixes:
            logger.info(f"清点 {len(prefixes)} 个子前缀（并发 {self.workers}）")
            with ThreadPoolExecutor(max_workers=self.workers) as executor:
                futures = {executor.submit(self._list_prefix, p): p for p in prefixes}
                for future in as_completed(futures):
                    prefix = futures[future]
                    try:
                        page_records = future.result()
                    except ObjectStoreError as e:
                        for pending in futures:
                            pending.cancel()
                        raise StoreAnalysisError(
                            f"列举 {prefix} 失败: {e.message}",
                            {"prefix": prefix, "reason": ErrorCode.ANALYZE_LIST_FAILED,
                             "error_type": e.error_type},
                        ) from e
                    logger.debug(f"{prefix}: {len(page_records)} 个对象")
                    for record in page_records:
                        by_key[record.key] = record

        result = [r for key, r in sorted(by_key.items()) if not is_system_key(environment, key)]
        logger.info(f"存储清点完成: {len(result)} 个对象")
        return result
