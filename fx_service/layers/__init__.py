"""
汇率链路分层
  calculator   : 舍入、换算、涨跌幅、统计
  rate_limiter : 跨实例滑动窗口限流
  processing   : 上游数据行清洗与单位规范化
  upstream     : 上游统计检索接口      （链路第 3 层）
  persistence  : MongoDB 快照与节假日回退（链路第 2 层）
  cache        : Redis 读穿缓存          （链路第 1 层）
  chain        : 逐层包装组装
"""
