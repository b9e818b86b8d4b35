"""
沙箱会话清理任务

会话只存在 API 进程内存里，所以清理循环跟随应用启动（见 app.main），
不能像独立 CronJob 那样另起进程执行；手动触发走 POST /api/v1/lab/sessions/sweep。
"""

from __future__ import annotations

import asyncio

from loguru import logger

from app.lab.service import LabService


def run_once(service: LabService) -> int:
    purged = service.sweep_sessions()
    logger.info(f"会话清理任务执行结果: purged={purged}")
    return purged


async def run_forever(service: LabService, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            run_once(service)
        except Exception as exc:
            # 单轮失败不能让循环退出
            logger.exception(f"会话清理任务失败: {exc}")

