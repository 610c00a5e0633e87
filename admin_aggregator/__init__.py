"""
Admin Aggregator - 管理控制台的视图模型聚合核心

负责：
- 按各自周期轮询控制面、身份、遥测、firehose 四类数据源
- 将原始记录 join 成按资源类型划分的视图模型表
- 向并发读者提供一致的快照
- 把变更操作转发给后端 API，成功后立即重建受影响的视图
- 记录审计日志，周期性写入统计历史
"""

__version__ = "1.0.0"
