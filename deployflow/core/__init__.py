"""核心层：数据模型、异常、配置、锁与记录"""
